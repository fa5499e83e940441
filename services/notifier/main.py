from typing import Any

from fastapi import FastAPI

from shared.contracts.models import ChannelMessage

app = FastAPI(title="notifier")
DELIVERY_LOG: list[dict[str, Any]] = []
MAX_LOG_ENTRIES = 1000


def _append_log(entry: dict[str, Any]) -> None:
    DELIVERY_LOG.append(entry)
    if len(DELIVERY_LOG) > MAX_LOG_ENTRIES:
        del DELIVERY_LOG[0 : len(DELIVERY_LOG) - MAX_LOG_ENTRIES]


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "notifier"}


@app.post("/publish")
def publish(message: ChannelMessage) -> dict[str, Any]:
    # Fan-out to live connections happens in the push transport; this records the hand-off.
    _append_log(message.model_dump(mode="json"))
    return {"status": "queued", "channel": message.channel, "event": message.event.value}


@app.get("/logs")
def logs(channel: str | None = None) -> list[dict[str, Any]]:
    if channel is None:
        return DELIVERY_LOG
    return [entry for entry in DELIVERY_LOG if entry["channel"] == channel]
