"""
Error taxonomy for the LIS reconciliation pipeline and the project-wide
DRF exception handler.

Every domain error is an ``APIException`` so that views can let them
propagate and still produce a response carrying a ``detail`` message the
operator sees verbatim.
"""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


class ValidationError(DRFValidationError):
    """Malformed mapping input; rejected before any state change.

    ``detail`` is a field -> messages dict, e.g.
    ``{'external_test_code': ['already mapped for this device']}``.
    """
    default_code = 'validation_error'


class NotConfiguredError(APIException):
    """The row's native code has no active mapping.  Never shown as a failure."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'No active channel mapping for this test code.'
    default_code = 'not_configured'

    def __init__(self, detail=None, code=None, warning=None):
        super().__init__(detail, code)
        self.warning = warning


class ResolutionError(APIException):
    """A mapping exists but no open order/test could receive the result."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'No matching open order for this result.'
    default_code = 'resolution_error'


class PostingDeferred(APIException):
    """The matching order exists but is not accepting results yet."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Order is not ready to receive results.'
    default_code = 'posting_deferred'


class ConflictError(APIException):
    """A compare-and-set on a row lost against a concurrent transition."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Row already advanced by another request.'
    default_code = 'conflict'


class PreconditionFailed(APIException):
    status_code = status.HTTP_412_PRECONDITION_FAILED
    default_detail = 'Operation not allowed in the current state.'
    default_code = 'precondition_failed'


class TransportError(APIException):
    """The order service could not be reached or answered with a 5xx."""
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = 'Order service unavailable.'
    default_code = 'transport_error'


class ParseError(APIException):
    """A device message could not be parsed at all."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = 'Message could not be parsed.'
    default_code = 'parse_error'


def _message_of(data) -> str:
    if isinstance(data, dict):
        if 'detail' in data:
            return str(data['detail'])
        parts = []
        for field, msgs in data.items():
            if isinstance(msgs, (list, tuple)):
                msgs = '; '.join(str(m) for m in msgs)
            parts.append(f"{field}: {msgs}")
        return ' '.join(parts)
    if isinstance(data, (list, tuple)):
        return '; '.join(str(m) for m in data)
    return str(data)


def api_exception_handler(exc, context):
    resp = drf_exception_handler(exc, context)
    if resp is None:
        logger.exception('Unhandled error in %s', context.get('view'))
        return Response(
            {'ok': False, 'detail': 'Internal server error', 'error': {'code': 'server_error', 'message': str(exc)}},
            status=500,
        )
    if isinstance(exc, TransportError):
        logger.error('Order service transport failure: %s', exc.detail)
    code = getattr(exc, 'default_code', None) or 'api_error'
    if isinstance(exc, APIException):
        codes = exc.get_codes()
        if isinstance(codes, str):
            code = codes
    # normalize response
    data = resp.data
    body = {'ok': False, 'detail': _message_of(data), 'error': {'code': code, 'message': data.get('detail', data) if isinstance(data, dict) else data}}
    if isinstance(data, dict) and 'detail' not in data:
        body['errors'] = data
    headers = {k: v for k, v in resp.items() if k in ("WWW-Authenticate", "Retry-After")}
    return Response(body, status=resp.status_code, headers=headers)
