"""
Authentication backends.

Operators authenticate with DRF tokens (``Authorization: Token <key>``) or
JWTs.  Analyzer connectors push messages with a per-device key sent in the
``X-Device-Key`` header; a successful check leaves the device in
``request.auth`` and an anonymous user in ``request.user``.
"""
from __future__ import annotations

from django.contrib.auth.models import AnonymousUser
from rest_framework import authentication, exceptions


class TokenAuthentication(authentication.TokenAuthentication):
    keyword = 'Token'


class DeviceKeyAuthentication(authentication.BaseAuthentication):
    header = 'HTTP_X_DEVICE_KEY'

    def authenticate(self, request):
        from .models import LabDevice

        raw_key = request.META.get(self.header, '').strip()
        if not raw_key:
            return None
        kwargs = (getattr(request, 'parser_context', None) or {}).get('kwargs') or {}
        code = kwargs.get('device_code')
        if not code:
            return None
        device = LabDevice.objects.filter(code=code).first()
        if device is None or not device.check_api_key(raw_key):
            raise exceptions.AuthenticationFailed('Invalid device key.')
        if not device.is_active:
            raise exceptions.AuthenticationFailed('Device is inactive.')
        return AnonymousUser(), device

    def authenticate_header(self, request):
        return 'X-Device-Key'
