"""
URL mappings for the LIS API.

Trailing slashes are omitted, as the front end calls the paths without
them.
"""
from django.urls import include, path

from .auth_views import jwt_refresh_view, login_view
from .views import channels, devices, health, ingest, results

urlpatterns = [
    path('metrics', include('django_prometheus.urls')),
    path('healthz', health.healthz, name='healthz'),
    path('api/auth/login', login_view, name='login_view'),
    path('api/auth/refresh', jwt_refresh_view, name='jwt_refresh_view'),

    # devices & logs
    path('api/lis/devices', devices.device_list),
    path('api/lis/devices/status', devices.device_status),
    path('api/lis/devices/<int:device_id>/logs', devices.device_logs),
    path('api/lis/logs/<int:log_id>', devices.log_detail),
    path('api/lis/logs/<int:log_id>/reprocess', devices.log_reprocess),

    # channel mappings
    path('api/lis/devices/<int:device_id>/channels', channels.device_channels),
    path('api/lis/channels/<int:channel_id>', channels.channel_detail),

    # staging results
    path('api/lis/devices/<int:device_id>/results/staging', results.staging_rows),
    path('api/lis/results/errors', results.error_queue),
    path('api/lis/results/<int:row_id>', results.result_detail),

    # reconciliation
    path('api/lis/mapping/devices/<int:device_id>/auto-map', results.auto_map_device),
    path('api/lis/mapping/samples/<str:sample_id>/auto-map', results.auto_map_sample),
    path('api/lis/mapping/staging/<int:row_id>/map', results.map_row),

    # connector ingestion
    path('api/lis/devices/<str:device_code>/messages', ingest.device_push),
]
