from __future__ import annotations

from enum import Enum

from ..client import ServiceClient, ServiceRequest, segment
from ..logging import get_logger
from ..models import (
    Device,
    Group,
    Page,
    decode_device,
    decode_group,
    decode_id_list,
    decode_page,
    decode_uuid,
)

log = get_logger("registry")

DEVICES_PATH = "api/v1/devices"
GROUPS_PATH = "api/v1/device_groups"


class DeviceType(str, Enum):
    VEHICLE = "Vehicle"
    OTHER = "Other"


def _decode_device_id(doc: object) -> str:
    return decode_uuid(doc, "created device id")


def _decode_group_id(doc: object) -> str:
    return decode_uuid(doc, "created group id")


class RegistryClient:
    """Device and group calls against the device registry backend."""

    def __init__(self, client: ServiceClient) -> None:
        self.client = client

    def list_devices(self) -> Page[Device]:
        log.debug("listing all devices")
        return self.client.send(
            ServiceRequest(
                method="GET",
                path=DEVICES_PATH,
                label="list devices",
                decode=decode_page(decode_device, "device list"),
            )
        ).value

    def get_device(self, device_id: str) -> Device:
        log.debug("listing details for device %s", device_id)
        return self.client.send(
            ServiceRequest(
                method="GET",
                path=f"{DEVICES_PATH}/{segment(device_id)}",
                label="get device",
                decode=decode_device,
            )
        ).value

    def list_group_devices(self, group_id: str) -> Page[str]:
        log.debug("listing devices in group %s", group_id)
        return self.client.send(
            ServiceRequest(
                method="GET",
                path=f"{GROUPS_PATH}/{segment(group_id)}/devices",
                label="list group devices",
                decode=decode_id_list("group device list"),
            )
        ).value

    def create_device(self, *, name: str, device_id: str, device_type: DeviceType) -> str:
        log.debug("creating device %s of type %s with id %s", name, device_type.value, device_id)
        return self.client.send(
            ServiceRequest(
                method="PUT",
                path=DEVICES_PATH,
                label="create device",
                body={"deviceName": name, "deviceId": device_id, "deviceType": device_type.value},
                decode=_decode_device_id,
            )
        ).value

    def delete_device(self, device_id: str) -> None:
        log.debug("deleting device %s", device_id)
        self.client.send(
            ServiceRequest(
                method="DELETE",
                path=f"{DEVICES_PATH}/{segment(device_id)}",
                label="delete device",
            )
        )

    def list_groups(self) -> Page[Group]:
        log.debug("listing all groups")
        return self.client.send(
            ServiceRequest(
                method="GET",
                path=GROUPS_PATH,
                label="list groups",
                decode=decode_page(decode_group, "group list"),
            )
        ).value

    def list_device_groups(self, device_id: str) -> Page[str]:
        log.debug("listing groups for device %s", device_id)
        return self.client.send(
            ServiceRequest(
                method="GET",
                path=f"{DEVICES_PATH}/{segment(device_id)}/groups",
                label="list device groups",
                decode=decode_id_list("device group list"),
            )
        ).value

    def create_group(self, name: str) -> str:
        log.debug("creating device group %s", name)
        return self.client.send(
            ServiceRequest(
                method="POST",
                path=GROUPS_PATH,
                label="create group",
                query={"groupName": name},
                decode=_decode_group_id,
            )
        ).value

    def rename_group(self, *, group_id: str, name: str) -> None:
        log.debug("renaming group %s to %s", group_id, name)
        self.client.send(
            ServiceRequest(
                method="PUT",
                path=f"{GROUPS_PATH}/{segment(group_id)}/rename",
                label="rename group",
                query={"groupName": name},
            )
        )

    def add_to_group(self, *, group_id: str, device_id: str) -> None:
        log.debug("adding device %s to group %s", device_id, group_id)
        self.client.send(
            ServiceRequest(
                method="POST",
                path=f"{GROUPS_PATH}/{segment(group_id)}/devices/{segment(device_id)}",
                label="add device to group",
            )
        )

    def remove_from_group(self, *, group_id: str, device_id: str) -> None:
        log.debug("removing device %s from group %s", device_id, group_id)
        self.client.send(
            ServiceRequest(
                method="DELETE",
                path=f"{GROUPS_PATH}/{segment(group_id)}/devices/{segment(device_id)}",
                label="remove device from group",
            )
        )
