"""
Connector push endpoint.

The analyzer connector (serial/TCP bridge or vendor middleware) posts each
complete message body as-is; framing has already been removed.  When the
connector relays for a device on another host it passes the device's
socket address in ``X-Source-Ip`` / ``X-Source-Port``.
"""
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import validate_ipv46_address
from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes, throttle_classes
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle

from lis.authentication import DeviceKeyAuthentication
from lis.permissions import IsDeviceConnector
from lis.services.staging import ingest


def _source_of(request):
    ip = (request.META.get('HTTP_X_SOURCE_IP') or request.META.get('REMOTE_ADDR') or '').strip()
    try:
        validate_ipv46_address(ip)
    except DjangoValidationError:
        ip = None
    port = request.META.get('HTTP_X_SOURCE_PORT') or request.META.get('REMOTE_PORT')
    port = int(port) if port and str(port).isdigit() and int(port) <= 65535 else None
    return ip, port


@api_view(['POST'])
@authentication_classes([DeviceKeyAuthentication])
@permission_classes([IsDeviceConnector])
@throttle_classes([ScopedRateThrottle])
def device_push(request, device_code: str):
    device = request.auth
    payload = request.body.decode('utf-8', errors='replace')
    source_ip, source_port = _source_of(request)
    result = ingest(device, payload, source_ip=source_ip, source_port=source_port)
    body = {
        'ok': True,
        'logId': result.log_entry.id,
        'status': result.log_entry.status,
        'rows': len(result.rows),
        'failed': result.failed,
        'sampleIds': result.log_entry.sample_ids,
        'reconciliation': result.reconciliation.to_dict()['counts'] if result.reconciliation else None,
    }
    return Response(body, status=status.HTTP_201_CREATED)

# ScopedRateThrottle reads throttle_scope from the view class
device_push.cls.throttle_scope = 'device_push'
