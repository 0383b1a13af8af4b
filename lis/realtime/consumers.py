import json

from channels.generic.websocket import AsyncWebsocketConsumer

from lis.permissions import VIEW, Capabilities


class ResultsConsumer(AsyncWebsocketConsumer):
    """Pushes staging-result changes to open operator screens."""
    GROUP = "lis.results"

    async def connect(self):
        user = self.scope.get("user")
        if not Capabilities.for_user(user).has(VIEW):
            await self.close(code=4003)
            return
        await self.channel_layer.group_add(self.GROUP, self.channel_name)
        await self.accept()
        await self.send(json.dumps({"type": "welcome", "message": "connected"}))

    async def disconnect(self, close_code):
        await self.channel_layer.group_discard(self.GROUP, self.channel_name)

    async def lis_results(self, event):
        # event: {"type": "lis.results", "reason": "...", "deviceIds": [...], "counts": {...}}
        await self.send(json.dumps(event))
