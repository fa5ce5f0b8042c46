from __future__ import annotations

from typing import Iterable

from ..client import ServiceClient, ServiceRequest, segment
from ..logging import get_logger
from ..models import (
    Campaign,
    CampaignStats,
    Page,
    decode_campaign,
    decode_campaign_stats,
    decode_id_list,
    decode_uuid,
)

log = get_logger("campaigner")

CAMPAIGNS_PATH = "api/v2/campaigns"


def _decode_created(doc: object) -> Campaign | str:
    # The campaigner answers either with the new campaign id or the full record.
    if isinstance(doc, dict):
        return decode_campaign(doc)
    return decode_uuid(doc, "created campaign id")


class CampaignerClient:
    """Campaign lifecycle calls against the campaigner backend."""

    def __init__(self, client: ServiceClient) -> None:
        self.client = client

    def create_campaign(self, *, name: str, update_id: str, groups: Iterable[str]) -> Campaign | str:
        group_list = list(groups)
        log.debug("creating campaign %s with update %s for groups: %s", name, update_id, group_list)
        resp = self.client.send(
            ServiceRequest(
                method="POST",
                path=CAMPAIGNS_PATH,
                label="create campaign",
                body={"name": name, "update": update_id, "groups": group_list},
                decode=_decode_created,
            )
        )
        return resp.value

    def get_campaign(self, campaign_id: str) -> Campaign:
        log.debug("getting campaign %s", campaign_id)
        resp = self.client.send(
            ServiceRequest(
                method="GET",
                path=f"{CAMPAIGNS_PATH}/{segment(campaign_id)}",
                label="get campaign",
                decode=decode_campaign,
            )
        )
        return resp.value

    def list_campaigns(self) -> Page[str]:
        log.debug("listing campaigns")
        resp = self.client.send(
            ServiceRequest(
                method="GET",
                path=CAMPAIGNS_PATH,
                label="list campaigns",
                decode=decode_id_list("campaign list"),
            )
        )
        return resp.value

    def launch_campaign(self, campaign_id: str) -> None:
        log.debug("launching campaign %s", campaign_id)
        self.client.send(
            ServiceRequest(
                method="POST",
                path=f"{CAMPAIGNS_PATH}/{segment(campaign_id)}/launch",
                label="launch campaign",
            )
        )

    def cancel_campaign(self, campaign_id: str) -> None:
        log.debug("cancelling campaign %s", campaign_id)
        self.client.send(
            ServiceRequest(
                method="POST",
                path=f"{CAMPAIGNS_PATH}/{segment(campaign_id)}/cancel",
                label="cancel campaign",
            )
        )

    def campaign_stats(self, campaign_id: str) -> CampaignStats:
        log.debug("getting stats for campaign %s", campaign_id)
        resp = self.client.send(
            ServiceRequest(
                method="GET",
                path=f"{CAMPAIGNS_PATH}/{segment(campaign_id)}/stats",
                label="campaign stats",
                decode=decode_campaign_stats(campaign_id),
            )
        )
        return resp.value
