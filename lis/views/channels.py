from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from lis.permissions import Capabilities, ViewOrManage
from lis.serializers.channels import (
    ChannelCreateSerializer,
    ChannelQuerySerializer,
    ChannelSerializer,
    ChannelWriteSerializer,
)
from lis.services.channels import create_mapping, delete_mapping, get_mapping, list_mappings, update_mapping


@api_view(['GET', 'POST'])
@permission_classes([ViewOrManage])
def device_channels(request, device_id: int):
    if request.method == 'GET':
        q = ChannelQuerySerializer(data=request.query_params)
        q.is_valid(raise_exception=True)
        channels = list_mappings(device_id, search=q.validated_data.get('q'),
                                 active_only=q.validated_data.get('active', False))
        return Response({'ok': True, 'data': ChannelSerializer(channels, many=True).data})

    s = ChannelCreateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    fields = dict(s.validated_data)
    code = fields.pop('external_test_code', '')
    ch = create_mapping(device_id, code, fields, Capabilities.for_user(request.user), user=request.user)
    return Response({'ok': True, 'data': ChannelSerializer(ch).data}, status=status.HTTP_201_CREATED)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([ViewOrManage])
def channel_detail(request, channel_id: int):
    caps = Capabilities.for_user(request.user)
    if request.method == 'GET':
        return Response({'ok': True, 'data': ChannelSerializer(get_mapping(channel_id)).data})
    if request.method == 'DELETE':
        delete_mapping(channel_id, caps, user=request.user)
        return Response({'ok': True})

    s = ChannelWriteSerializer(data=request.data, partial=True)
    s.is_valid(raise_exception=True)
    ch = update_mapping(channel_id, dict(s.validated_data), caps, user=request.user)
    return Response({'ok': True, 'data': ChannelSerializer(get_mapping(ch.pk)).data})
