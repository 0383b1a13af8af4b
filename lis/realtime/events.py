from typing import Dict, Iterable, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.utils import timezone

from .consumers import ResultsConsumer


def broadcast_results_changed(reason: str, device_ids: Iterable[int], counts: Optional[Dict[str, int]] = None) -> None:
    """Tell listening screens to refresh the staging views of ``device_ids``."""
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return
    event = {
        "type": "lis.results",
        "reason": reason,
        "deviceIds": sorted({d for d in device_ids if d is not None}),
        "counts": counts or {},
        "ts": timezone.now().isoformat(),
    }
    async_to_sync(channel_layer.group_send)(ResultsConsumer.GROUP, event)
