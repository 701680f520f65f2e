from __future__ import annotations

from datetime import timedelta
from typing import Mapping

from warden.config import Platform, PlatformPolicy
from warden.service.errors import BadRequestError


class PlatformPolicyResolver:
    """Lookup of token and session lifetimes per platform family.

    The table is validated once at construction: every :class:`Platform` member
    must be present and every lifetime positive, otherwise ``ValueError`` is
    raised and the service refuses to start.
    """

    def __init__(self, policies: Mapping[Platform, PlatformPolicy]) -> None:
        missing = [p.value for p in Platform if p not in policies]
        if missing:
            raise ValueError(f"missing platform policy for: {', '.join(missing)}")
        for platform, policy in policies.items():
            for name in ("access_token_ttl", "refresh_token_ttl", "session_ttl"):
                if getattr(policy, name) <= timedelta(0):
                    raise ValueError(f"{platform.value}.{name} must be positive")
        self._policies = dict(policies)

    def resolve(self, platform: Platform) -> PlatformPolicy:
        return self._policies[platform]

    @staticmethod
    def parse_platform(value: "str | Platform | None", *, default: Platform = Platform.WEB) -> Platform:
        """Parse a client-supplied platform, mapping rejection to a 400."""
        if value is None:
            return default
        try:
            return Platform.parse(value)
        except ValueError as exc:
            raise BadRequestError("unsupported platform", detail={"platform": value}) from exc


def expires_in_seconds(policy: PlatformPolicy) -> int:
    return policy.expires_in_seconds
