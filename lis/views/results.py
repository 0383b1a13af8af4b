from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from lis.permissions import CanMap, CanView, Capabilities
from lis.serializers.results import (
    AutoMapDeviceSerializer,
    ErrorQueueQuerySerializer,
    ResultQuerySerializer,
    ResultSerializer,
)
from lis.services import engine
from lis.services.staging import get_row, list_error_queue, list_rows


@api_view(['GET'])
@permission_classes([CanView])
def staging_rows(request, device_id: int):
    q = ResultQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    vd = q.validated_data
    rows = list_rows(device_id, status=vd.get('status'), sample_id=vd.get('sample_id'), limit=vd.get('limit'))
    return Response({'ok': True, 'data': ResultSerializer(rows, many=True).data})


@api_view(['GET'])
@permission_classes([CanView])
def error_queue(request):
    q = ErrorQueueQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    rows = list_error_queue(device_id=q.validated_data.get('device_id'), limit=q.validated_data.get('limit'))
    return Response({'ok': True, 'data': ResultSerializer(rows, many=True).data})


@api_view(['GET'])
@permission_classes([CanView])
def result_detail(request, row_id: int):
    return Response({'ok': True, 'data': ResultSerializer(get_row(row_id)).data})


# ---------------------------------------------------------------------
# Mapping actions
# ---------------------------------------------------------------------
@api_view(['POST'])
@permission_classes([CanMap])
def auto_map_device(request, device_id: int):
    s = AutoMapDeviceSerializer(data=request.query_params)
    s.is_valid(raise_exception=True)
    summary = engine.auto_map_device(device_id, Capabilities.for_user(request.user),
                                     limit=s.validated_data.get('limit'), user=request.user)
    return Response({'ok': True, **summary.to_dict()})


@api_view(['POST'])
@permission_classes([CanMap])
def auto_map_sample(request, sample_id: str):
    summary = engine.auto_map_sample(sample_id, Capabilities.for_user(request.user), user=request.user)
    return Response({'ok': True, **summary.to_dict()})


@api_view(['POST'])
@permission_classes([CanMap])
def map_row(request, row_id: int):
    outcome = engine.map_row(row_id, Capabilities.for_user(request.user), user=request.user)
    body = {'ok': True, 'result': outcome.to_dict(), 'data': ResultSerializer(get_row(row_id)).data}
    if outcome.outcome == engine.SKIPPED:
        body['precondition'] = 'already_posted'
    return Response(body)
