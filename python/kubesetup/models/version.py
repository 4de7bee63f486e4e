"""
kubesetup/models/version.py

Defines Pydantic models for Kubernetes version handling:
 - KubernetesVersion
 - UpgradePlan
"""

from __future__ import annotations

import re
from functools import total_ordering
from typing import Any, List, Tuple

from pydantic import BaseModel, ConfigDict, Field

from kubesetup.models.errors import ValidationError

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


@total_ordering
class KubernetesVersion(BaseModel):
    """A MAJOR.MINOR.PATCH release, ordered numerically."""

    model_config = ConfigDict(frozen=True)

    major: int = Field(ge=0)
    minor: int = Field(ge=0)
    patch: int = Field(ge=0)

    @classmethod
    def parse(cls, raw: str) -> KubernetesVersion:
        """
        Parses "1.31.2" or "v1.31.2".

        Raises:
            ValidationError: If the text is not MAJOR.MINOR.PATCH.
        """
        text = raw.strip()
        if text.startswith("v"):
            text = text[1:]
        match = _VERSION_RE.match(text)
        if not match:
            raise ValidationError(
                f"invalid Kubernetes version '{raw.strip()}' (expected MAJOR.MINOR.PATCH)"
            )
        major, minor, patch = (int(g) for g in match.groups())
        return cls(major=major, minor=minor, patch=patch)

    @property
    def key(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __lt__(self, other: Any) -> bool:
        if not isinstance(other, KubernetesVersion):
            return NotImplemented
        return self.key < other.key

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


class UpgradePlan(BaseModel):
    """
    Ordered hops from `current` to `target`, one per minor version.
    The last hop is always exactly `target`.
    """

    current: KubernetesVersion
    target: KubernetesVersion
    hops: List[KubernetesVersion] = Field(min_length=1)

    def __str__(self) -> str:
        return " -> ".join(str(v) for v in [self.current] + self.hops)
