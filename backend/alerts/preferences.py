"""
Preference Resolver — map an anomaly to the addresses entitled to hear about it.

Rules:
  - only preferences with email notifications enabled are considered
  - a row whose severity filter lacks the anomaly's severity is skipped
  - a user-specific row resolves that user (skipped if gone, inactive or
    without an address)
  - the first matching tenant-wide row resolves every tenant admin; later
    tenant-wide rows for the same anomaly are ignored
"""

from __future__ import annotations

import structlog

from analytics.repositories import ADMIN_CAPABILITY, PreferenceRepository, UserDirectory
from analytics.types import Anomaly, UserContact


def _address(contact: UserContact | None) -> str | None:
    if contact is None or not contact.is_active:
        return None
    email = (contact.email or "").strip()
    return email or None


class PreferenceResolver:
    def __init__(
        self,
        preference_repository: PreferenceRepository,
        user_directory: UserDirectory,
        *,
        admin_capability: str = ADMIN_CAPABILITY,
        logger=None,
    ):
        self.preference_repository = preference_repository
        self.user_directory = user_directory
        self.admin_capability = admin_capability
        self.logger = logger or structlog.get_logger()

    async def resolve(self, anomaly: Anomaly) -> list[str]:
        preferences = await self.preference_repository.enabled_for_tenant(anomaly.tenant_id)
        recipients: list[str] = []
        tenant_wide_resolved = False

        for pref in preferences:
            if anomaly.severity not in pref.severity_filter:
                self.logger.debug(
                    "preferences.severity_filtered",
                    anomaly_id=anomaly.id,
                    user_id=pref.user_id,
                    severity=anomaly.severity.value,
                    severity_filter=sorted(s.value for s in pref.severity_filter),
                )
                continue

            if pref.is_tenant_wide:
                if tenant_wide_resolved:
                    continue
                tenant_wide_resolved = True
                admins = await self.user_directory.users_with_capability(anomaly.tenant_id, self.admin_capability)
                for admin in admins:
                    address = _address(admin)
                    if address:
                        recipients.append(address)
                    else:
                        self.logger.debug("preferences.admin_unreachable", user_id=admin.user_id)
                continue

            user = await self.user_directory.get_user(anomaly.tenant_id, pref.user_id)
            address = _address(user)
            if address is None:
                self.logger.debug(
                    "preferences.user_unreachable",
                    anomaly_id=anomaly.id,
                    user_id=pref.user_id,
                    found=user is not None,
                )
                continue
            recipients.append(address)

        self.logger.info(
            "preferences.resolved",
            anomaly_id=anomaly.id,
            tenant_id=anomaly.tenant_id,
            preferences_considered=len(preferences),
            recipients=len(recipients),
        )
        return recipients
