"""Campaign lifecycle: create update -> create campaign -> launch -> stats -> cancel.

The backend owns campaign state. Only what can be checked with data already in
hand (non-empty groups, a valid targets descriptor) is validated here; state
transitions such as launching an already launched campaign are passed through
and any refusal surfaces as a RejectedError.
"""

from __future__ import annotations

from typing import Any, Iterable

from .backends import CampaignerClient, DirectorClient
from .cli_shared import OtaError, _unique_values
from .logging import get_logger
from .models import Campaign, CampaignStats, Page
from .targets import TargetsDescriptor

log = get_logger("workflow")


class WorkflowError(OtaError):
    kind = "workflow"


class InvalidGroups(WorkflowError):
    kind = "workflow.invalid_groups"


class InvalidCampaignInput(WorkflowError):
    kind = "workflow.invalid_input"


class MissingService(WorkflowError):
    kind = "workflow.missing_service"

    def __init__(self, service: str, operation: str) -> None:
        self.service = service
        super().__init__(f"{operation} needs the {service} service, which is not configured")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "service": self.service}


def _campaign_groups(groups: Iterable[str] | None) -> list[str]:
    values = _unique_values(list(groups or []))
    if not values:
        raise InvalidGroups("a campaign needs at least one target group")
    return values


def _require_input(value: str | None, name: str) -> str:
    v = (value or "").strip()
    if not v:
        raise InvalidCampaignInput(f"campaign {name} must not be empty")
    return v


class CampaignWorkflow:
    def __init__(
        self,
        *,
        campaigner: CampaignerClient | None = None,
        director: DirectorClient | None = None,
    ) -> None:
        self._campaigner = campaigner
        self._director = director

    @property
    def campaigner(self) -> CampaignerClient:
        if self._campaigner is None:
            raise MissingService("campaigner", "campaign management")
        return self._campaigner

    @property
    def director(self) -> DirectorClient:
        if self._director is None:
            raise MissingService("director", "multi-target update creation")
        return self._director

    def _require_services(self) -> None:
        """Raise MissingService unless both the campaigner and director are bound."""
        if self._campaigner is None:
            raise MissingService("campaigner", "campaign management")
        if self._director is None:
            raise MissingService("director", "multi-target update creation")

    def create_update(self, descriptor: TargetsDescriptor) -> str:
        wire = descriptor.to_wire()
        update_id = self.director.create_multi_target_update(wire)
        log.info("created multi-target update %s (%d targets)", update_id, len(wire["targets"]))
        return update_id

    def create_campaign(self, name: str, update_id: str, groups: Iterable[str]) -> Campaign:
        name = _require_input(name, "name")
        update_id = _require_input(update_id, "update id")
        group_list = _campaign_groups(groups)
        created = self.campaigner.create_campaign(name=name, update_id=update_id, groups=group_list)
        if isinstance(created, Campaign):
            campaign = created
        else:
            campaign = self.campaigner.get_campaign(created)
        log.info("created campaign %s (%s)", campaign.id, campaign.name)
        return campaign

    def launch(self, campaign_id: str) -> None:
        campaign_id = _require_input(campaign_id, "id")
        self.campaigner.launch_campaign(campaign_id)
        log.info("launched campaign %s", campaign_id)

    def cancel(self, campaign_id: str) -> None:
        campaign_id = _require_input(campaign_id, "id")
        self.campaigner.cancel_campaign(campaign_id)
        log.info("cancelled campaign %s", campaign_id)

    def stats(self, campaign_id: str) -> CampaignStats:
        return self.campaigner.campaign_stats(_require_input(campaign_id, "id"))

    def get(self, campaign_id: str) -> Campaign:
        return self.campaigner.get_campaign(_require_input(campaign_id, "id"))

    def list(self) -> Page[str]:
        return self.campaigner.list_campaigns()

    def create_and_launch(self, name: str, update_id: str, groups: Iterable[str]) -> Campaign:
        campaign = self.create_campaign(name, update_id, groups)
        self.launch(campaign.id)
        return self.get(campaign.id)

    def rollout(
        self,
        descriptor: TargetsDescriptor,
        *,
        name: str,
        groups: Iterable[str],
        launch: bool = False,
    ) -> Campaign:
        """Create the update and the campaign in one go.

        Every local check runs before the first request so a bad name, group
        set or descriptor never leaves an orphaned update behind.
        """

        name = _require_input(name, "name")
        group_list = _campaign_groups(groups)
        descriptor.validate()
        self._require_services()
        update_id = self.create_update(descriptor)
        if launch:
            return self.create_and_launch(name, update_id, group_list)
        return self.create_campaign(name, update_id, group_list)
