# platforms.py
from __future__ import annotations

import sys
from typing import Iterable, Optional

from .errors import InfrastructureError

# runs-on label prefixes served by a host of each OS family
OS_LABEL_PREFIXES = {
    "linux": ("ubuntu-", "linux"),
    "darwin": ("macos-", "macos"),
    "win32": ("windows-", "windows"),
}

# always available on the controller host
LOCAL_LABELS = ("local", "self-hosted")


def host_family(platform: Optional[str] = None) -> str:
    platform = platform or sys.platform
    if platform.startswith("linux"):
        return "linux"
    if platform == "darwin":
        return "darwin"
    if platform in ("win32", "cygwin"):
        return "win32"
    return platform


class PlatformResolver:
    """
    Decides whether a `runs-on` label can be served by this controller.

    The host serves its own OS family (ubuntu-latest on Linux, ...), the
    generic local labels, and any extra labels configured explicitly.
    """

    def __init__(self, extra_labels: Iterable[str] = (), *, platform: Optional[str] = None):
        self.family = host_family(platform)
        self.extra_labels = {label.strip() for label in extra_labels if label.strip()}

    def supports(self, label: str) -> bool:
        label = label.strip()
        if label in LOCAL_LABELS or label in self.extra_labels:
            return True
        prefixes = OS_LABEL_PREFIXES.get(self.family, ())
        return any(label == p or label.startswith(p) for p in prefixes)

    def resolve(self, instance_id: str, label: str) -> str:
        if not self.supports(label):
            raise InfrastructureError(
                "requested platform is not available on this host",
                {"job": instance_id, "runs_on": label, "host": self.family},
            )
        return label
