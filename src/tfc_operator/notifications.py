"""Workspace notification convergence.

Notifications are identified by name. A remote notification that does not
exactly match its desired twin is deleted and created again rather than
patched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .models import Notification, NotificationConfiguration
from .tfc_client import TerraformCloudClient


@dataclass
class NotificationSyncResult:
    deleted: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.deleted or self.created)


def notification_matches(remote: NotificationConfiguration, desired: Notification) -> bool:
    """True if the remote notification is exactly the desired one."""
    return (
        remote.name == desired.name
        and remote.token == desired.token
        and remote.url == desired.url
        and remote.destination_type == desired.type.value
        and remote.enabled == desired.enabled
        and remote.email_addresses == desired.recipients
        and remote.triggers == desired.triggers
        and remote.email_user_ids == desired.users
    )


class NotificationSynchronizer:
    """Converges a workspace's notification configurations."""

    def __init__(
        self,
        client: TerraformCloudClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._logger = logger or logging.getLogger(__name__)

    async def sync(
        self, workspace_id: str, notifications: list[Notification]
    ) -> NotificationSyncResult:
        result = NotificationSyncResult()
        remote = await self._client.list_notifications(workspace_id)
        if not remote and not notifications:
            return result

        kept: set[str] = set()
        for existing in remote:
            if any(notification_matches(existing, desired) for desired in notifications):
                kept.add(existing.name)
                continue
            await self._client.delete_notification(existing.id)
            result.deleted.append(existing.name)

        for desired in notifications:
            if desired.name in kept:
                continue
            await self._client.create_notification(
                workspace_id,
                name=desired.name,
                destination_type=desired.type.value,
                enabled=desired.enabled,
                token=desired.token,
                url=desired.url,
                triggers=list(desired.triggers),
                email_addresses=list(desired.recipients),
                email_user_ids=list(desired.users),
            )
            result.created.append(desired.name)

        if result.changed:
            self._logger.info(
                "Converged workspace notifications",
                extra={
                    "workspace_id": workspace_id,
                    "deleted": result.deleted,
                    "created": result.created,
                },
            )
        return result
