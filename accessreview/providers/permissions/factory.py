from __future__ import annotations

from accessreview.core.config import get_settings
from accessreview.core.errors import InvalidConfigError
from accessreview.providers.permissions.base import PermissionSource
from accessreview.providers.permissions.fake import FakePermissionSource
from accessreview.providers.permissions.graph import GraphPermissionSource


_fake_source: FakePermissionSource | None = None


def get_permission_source() -> PermissionSource:
    settings = get_settings()
    provider = (settings.permission_source or "graph").lower()

    if provider == "graph":
        return GraphPermissionSource()
    if provider == "fake":
        # Share one fake across requests so seeded resources survive between calls.
        global _fake_source
        if _fake_source is None:
            _fake_source = FakePermissionSource()
        return _fake_source

    raise InvalidConfigError(f"Unsupported permission source: {provider}")
