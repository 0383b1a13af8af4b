from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from lis.models import LabDevice
from lis.permissions import CanMap, CanView, Capabilities
from lis.serializers.devices import DeviceSerializer, LogEntryDetailSerializer, LogEntrySerializer, LogQuerySerializer
from lis.services.logs import get_entry, list_entries
from lis.services.staging import device_status_summary, reprocess_entry


@api_view(['GET'])
@permission_classes([CanView])
def device_list(request):
    devices = LabDevice.objects.order_by('name', 'id')
    return Response({'ok': True, 'data': DeviceSerializer(devices, many=True).data})


@api_view(['GET'])
@permission_classes([CanView])
def device_status(request):
    """Analyzer status widget: per-device staging/error counters."""
    return Response({'ok': True, 'data': device_status_summary()})


@api_view(['GET'])
@permission_classes([CanView])
def device_logs(request, device_id: int):
    q = LogQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    entries = list_entries(device_id, limit=q.validated_data.get('limit'), search=q.validated_data.get('search'))
    return Response({'ok': True, 'data': LogEntrySerializer(entries, many=True).data})


@api_view(['GET'])
@permission_classes([CanView])
def log_detail(request, log_id: int):
    return Response({'ok': True, 'data': LogEntryDetailSerializer(get_entry(log_id)).data})


@api_view(['POST'])
@permission_classes([CanMap])
def log_reprocess(request, log_id: int):
    """Replay a stored inbound message, e.g. after fixing its device mappings."""
    result = reprocess_entry(log_id, Capabilities.for_user(request.user), user=request.user)
    body = {
        'ok': True,
        'logId': result.log_entry.id,
        'reprocessedFrom': log_id,
        'status': result.log_entry.status,
        'rows': len(result.rows),
        'failed': result.failed,
        'sampleIds': result.log_entry.sample_ids,
        'reconciliation': result.reconciliation.to_dict()['counts'] if result.reconciliation else None,
    }
    return Response(body, status=status.HTTP_201_CREATED)
