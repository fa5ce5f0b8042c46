from __future__ import annotations

from typing import Any

from ..client import ServiceClient, ServiceRequest, segment
from ..logging import get_logger
from ..models import decode_uuid

log = get_logger("director")

MULTI_TARGET_UPDATES_PATH = "api/v1/multi_target_updates"


def _decode_update_id(doc: Any) -> str:
    return decode_uuid(doc, "multi-target update id")


class DirectorClient:
    """Multi-target update calls against the director backend."""

    def __init__(self, client: ServiceClient) -> None:
        self.client = client

    def create_multi_target_update(self, wire_targets: dict[str, Any]) -> str:
        hardware_ids = sorted((wire_targets.get("targets") or {}).keys())
        log.debug("creating multi-target update for hardware ids: %s", ", ".join(hardware_ids))
        resp = self.client.send(
            ServiceRequest(
                method="POST",
                path=MULTI_TARGET_UPDATES_PATH,
                label="create multi-target update",
                body=wire_targets,
                decode=_decode_update_id,
            )
        )
        return resp.value

    def assign_update(self, *, device_id: str, update_id: str) -> None:
        log.debug("assigning multi-target update %s to device %s", update_id, device_id)
        self.client.send(
            ServiceRequest(
                method="PUT",
                path=f"api/v1/admin/devices/{segment(device_id)}/multi_target_update/{segment(update_id)}",
                label="assign multi-target update",
            )
        )
