"""
Integration tests for the LIS REST API.

They go through URL routing, authentication, capability checks and the
error envelope, using DRF's APIClient within APITestCase.

To run the tests:

```
pytest -q lis/tests
```
"""
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from ..models import LabDevice, LabDeviceChannel, LabDeviceMessageLog, LabDeviceResult, LabOrder, LabOrderItem, LabTest, User

ASTM = (
    "H|\\^&|||CBC-01\r"
    "P|1||PAT001\r"
    "O|1|S1||^^^CBC\r"
    "R|1|^^^WBC|7.2|10^9/L|4.0-11.0|N\r"
    "L|1|N"
)


class LisAPITests(APITestCase):
    def setUp(self) -> None:
        self.viewer = User.objects.create_user(username="viewer1", password="P@ssw0rd1", role="viewer")
        self.tech = User.objects.create_user(username="tech1", password="P@ssw0rd1", role="technician")
        self.admin = User.objects.create_user(username="labadmin1", password="P@ssw0rd1", role="lab_admin")

        self.device = LabDevice(code="CBC-01", name="Hematology analyzer")
        self.device.set_api_key("secret-key")
        self.device.save()
        self.wbc = LabTest.objects.create(code="WBC", name="White blood cells", unit="10^9/L")
        self.hgb = LabTest.objects.create(code="HGB", name="Hemoglobin", unit="g/dL")
        self.channel = LabDeviceChannel.objects.create(
            device=self.device, external_test_code="WBC", lis_test=self.wbc,
        )
        self.order = LabOrder.objects.create(sample_id="S1", patient_id="P1", status=LabOrder.STATUS_COLLECTED)
        LabOrderItem.objects.create(order=self.order, test=self.wbc)

    def authenticate(self, user):
        self.client.force_authenticate(user=user)

    def stage(self, code="WBC", sample_id="S1"):
        return LabDeviceResult.objects.create(
            device=self.device, sample_id=sample_id, external_test_code=code, result_value="7.2",
        )

    # -- auth ---------------------------------------------------------------

    def test_login_returns_token_jwt_and_capabilities(self):
        r = self.client.post(reverse("login_view"), {"username": "tech1", "password": "P@ssw0rd1"}, format="json")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertTrue(r.data["token"])
        self.assertTrue(r.data["jwt_access"])
        self.assertEqual(r.data["capabilities"], ["map", "view"])

        self.client.credentials(HTTP_AUTHORIZATION=f"Token {r.data['token']}")
        self.assertEqual(self.client.get("/api/lis/devices").status_code, status.HTTP_200_OK)

    def test_bad_login(self):
        r = self.client.post(reverse("login_view"), {"username": "tech1", "password": "nope"}, format="json")
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(r.data["ok"])

    def test_anonymous_is_rejected(self):
        r = self.client.get("/api/lis/devices")
        self.assertEqual(r.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertFalse(r.data["ok"])
        self.assertIn("detail", r.data)

    # -- devices, logs -----------------------------------------------------

    def test_device_list_and_status(self):
        self.authenticate(self.viewer)
        r = self.client.get("/api/lis/devices")
        self.assertEqual([d["code"] for d in r.data["data"]], ["CBC-01"])
        self.stage()
        r = self.client.get("/api/lis/devices/status")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.data["data"][0]["staging_count"], 1)

    def test_log_limit_is_clamped(self):
        for n in range(3):
            LabDeviceMessageLog.objects.create(device=self.device, raw_payload=f"H|{n}")
        self.authenticate(self.viewer)
        r = self.client.get(f"/api/lis/devices/{self.device.pk}/logs", {"limit": 0})
        self.assertEqual(len(r.data["data"]), 1)
        r = self.client.get(f"/api/lis/devices/{self.device.pk}/logs", {"limit": 99999})
        self.assertEqual(len(r.data["data"]), 3)
        self.assertNotIn("raw_payload", r.data["data"][0])

        r = self.client.get(f"/api/lis/logs/{r.data['data'][0]['id']}")
        self.assertEqual(r.data["data"]["raw_payload"], "H|2")

    def test_unknown_device_is_404(self):
        self.authenticate(self.viewer)
        r = self.client.get("/api/lis/devices/999999/logs")
        self.assertEqual(r.status_code, status.HTTP_404_NOT_FOUND)
        self.assertIn("999999", r.data["detail"])

    # -- channels ------------------------------------------------------------

    def test_viewer_cannot_create_mapping(self):
        self.authenticate(self.viewer)
        url = f"/api/lis/devices/{self.device.pk}/channels"
        self.assertEqual(self.client.get(url).status_code, status.HTTP_200_OK)
        r = self.client.post(url, {"external_test_code": "HGB", "lis_test_id": self.hgb.pk}, format="json")
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)
        self.assertFalse(LabDeviceChannel.objects.filter(external_test_code="HGB").exists())

    def test_admin_manages_mappings(self):
        self.authenticate(self.admin)
        url = f"/api/lis/devices/{self.device.pk}/channels"
        r = self.client.post(url, {"external_test_code": "HGB", "lis_test_id": self.hgb.pk,
                                   "reference_range": "12-16"}, format="json")
        self.assertEqual(r.status_code, status.HTTP_201_CREATED)
        ch_id = r.data["data"]["id"]
        self.assertEqual(r.data["data"]["lis_test_code"], "HGB")

        r = self.client.post(url, {"external_test_code": "hgb"}, format="json")
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("external_test_code", r.data["errors"])
        self.assertIn("already mapped", r.data["detail"])

        r = self.client.patch(f"/api/lis/channels/{ch_id}", {"is_active": False}, format="json")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertFalse(r.data["data"]["is_active"])

        r = self.client.delete(f"/api/lis/channels/{ch_id}")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(self.client.get(f"/api/lis/channels/{ch_id}").status_code, status.HTTP_404_NOT_FOUND)

    def test_mapping_writes_accept_null_text_fields(self):
        self.authenticate(self.admin)
        empty = {"external_test_name": None, "default_unit": None, "reference_range": None}
        r = self.client.post(f"/api/lis/devices/{self.device.pk}/channels",
                             {"external_test_code": "HGB", "lis_test_id": self.hgb.pk, "is_active": True, **empty},
                             format="json")
        self.assertEqual(r.status_code, status.HTTP_201_CREATED)
        self.assertEqual(r.data["data"]["default_unit"], "")

        r = self.client.put(f"/api/lis/channels/{self.channel.pk}",
                            {"external_test_code": "WBC", "lis_test_id": self.wbc.pk, "is_active": False, **empty},
                            format="json")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.channel.refresh_from_db()
        self.assertFalse(self.channel.is_active)
        self.assertEqual((self.channel.external_test_name, self.channel.reference_range), ("", ""))

    def test_empty_code_is_a_field_error(self):
        self.authenticate(self.admin)
        r = self.client.post(f"/api/lis/devices/{self.device.pk}/channels", {"external_test_code": ""}, format="json")
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("external_test_code", r.data["errors"])

    # -- staging & mapping -----------------------------------------------------

    def test_staging_list(self):
        self.stage()
        self.stage(code="XYZ", sample_id="S2")
        self.authenticate(self.viewer)
        r = self.client.get(f"/api/lis/devices/{self.device.pk}/results/staging", {"sample_id": "s2"})
        self.assertEqual([row["external_test_code"] for row in r.data["data"]], ["XYZ"])
        r = self.client.get(f"/api/lis/devices/{self.device.pk}/results/staging", {"status": "bogus"})
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)

    def test_viewer_cannot_map(self):
        row = self.stage()
        self.authenticate(self.viewer)
        r = self.client.post(f"/api/lis/mapping/devices/{self.device.pk}/auto-map")
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)
        r = self.client.post(f"/api/lis/mapping/staging/{row.pk}/map")
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)
        row.refresh_from_db()
        self.assertEqual(row.status, "staging")

    def test_auto_map_device(self):
        self.stage()
        self.stage(code="XYZ")
        self.authenticate(self.tech)
        r = self.client.post(f"/api/lis/mapping/devices/{self.device.pk}/auto-map?limit=50")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.data["counts"]["posted"], 1)
        self.assertEqual(r.data["counts"]["unchanged"], 1)
        self.assertEqual(r.data["processed"], 2)

    def test_auto_map_sample_without_rows_is_404(self):
        self.authenticate(self.tech)
        r = self.client.post("/api/lis/mapping/samples/NOPE/auto-map")
        self.assertEqual(r.status_code, status.HTTP_404_NOT_FOUND)
        self.assertIn("NOPE", r.data["detail"])

    def test_map_row_twice(self):
        row = self.stage()
        self.authenticate(self.tech)
        r = self.client.post(f"/api/lis/mapping/staging/{row.pk}/map")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.data["result"]["outcome"], "posted")
        self.assertEqual(r.data["data"]["lis_order_id"], self.order.pk)

        r = self.client.post(f"/api/lis/mapping/staging/{row.pk}/map")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.data["result"]["outcome"], "skipped")
        self.assertEqual(r.data["precondition"], "already_posted")

    def test_error_queue(self):
        row = self.stage(sample_id="NO-ORDER")
        self.authenticate(self.tech)
        self.client.post(f"/api/lis/mapping/staging/{row.pk}/map")
        r = self.client.get("/api/lis/results/errors", {"device_id": self.device.pk})
        self.assertEqual([e["id"] for e in r.data["data"]], [row.pk])
        self.assertIn("No open order", r.data["data"][0]["error_message"])

    # -- connector push ---------------------------------------------------------

    def push(self, payload, key="secret-key", code="CBC-01"):
        return self.client.post(f"/api/lis/devices/{code}/messages", data=payload,
                                content_type="text/plain", HTTP_X_DEVICE_KEY=key)

    def test_device_push_ingests_and_reconciles(self):
        r = self.push(ASTM)
        self.assertEqual(r.status_code, status.HTTP_201_CREATED)
        self.assertEqual(r.data["rows"], 1)
        self.assertEqual(r.data["sampleIds"], ["S1"])
        self.assertEqual(r.data["reconciliation"]["posted"], 1)
        self.assertEqual(LabDeviceMessageLog.objects.get().source_ip, "127.0.0.1")

    def test_device_push_requires_valid_key(self):
        self.assertEqual(self.push(ASTM, key="wrong").status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(self.push(ASTM, key="").status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(self.push(ASTM, code="OTHER").status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertFalse(LabDeviceMessageLog.objects.exists())

    def test_unparseable_push_is_422_and_logged(self):
        r = self.push("garbage")
        self.assertEqual(r.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.assertEqual(r.data["error"]["code"], "parse_error")
        self.assertEqual(LabDeviceMessageLog.objects.get().status, "error")

    def test_healthz(self):
        r = self.client.get("/healthz")
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["ok"])

    def test_reprocess_log_entry(self):
        LabDeviceChannel.objects.filter(pk=self.channel.pk).update(is_active=False)
        self.push(ASTM)
        original = LabDeviceMessageLog.objects.get()
        url = f"/api/lis/logs/{original.pk}/reprocess"

        self.authenticate(self.viewer)
        self.assertEqual(self.client.post(url).status_code, status.HTTP_403_FORBIDDEN)

        LabDeviceChannel.objects.filter(pk=self.channel.pk).update(is_active=True)
        self.authenticate(self.tech)
        r = self.client.post(url)
        self.assertEqual(r.status_code, status.HTTP_201_CREATED)
        self.assertEqual(r.data["reprocessedFrom"], original.pk)
        self.assertNotEqual(r.data["logId"], original.pk)
        self.assertEqual(r.data["reconciliation"]["posted"], 1)
        self.assertEqual(LabDeviceMessageLog.objects.count(), 2)

    def test_reprocess_truncated_entry_is_refused(self):
        entry = LabDeviceMessageLog.objects.create(device=self.device, raw_payload="H|\\^&", truncated=True)
        self.authenticate(self.tech)
        r = self.client.post(f"/api/lis/logs/{entry.pk}/reprocess")
        self.assertEqual(r.status_code, status.HTTP_412_PRECONDITION_FAILED)
        self.assertIn("truncated", r.data["detail"])
