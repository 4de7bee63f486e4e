"""
kubesetup/deployment/versions.py

Upgrade planning: turns (current, target) into an UpgradePlan with one hop
per minor version. Intermediate hops are resolved to the latest stable patch
of their minor through a resolver; the default one asks dl.k8s.io.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Type

import aiohttp

from kubesetup.models.errors import ValidationError
from kubesetup.models.version import KubernetesVersion, UpgradePlan
from kubesetup.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

STABLE_RELEASE_URL = "https://dl.k8s.io/release/stable-{major}.{minor}.txt"

PatchResolver = Callable[[int, int], Awaitable[KubernetesVersion]]


class StableReleaseResolver:
    """
    Resolves the latest published patch for a minor from dl.k8s.io.
    Usable as an async context manager to share one aiohttp session.
    """

    def __init__(self, *, timeout: float = 30.0, retries: int = 3) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._retries = retries
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> StableReleaseResolver:
        self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: object,
    ) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        """Ensure an aiohttp session is available, creating one if needed."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _fetch(self, url: str) -> str:
        @async_retry(retries=self._retries, delay=2.0, retry_on=(aiohttp.ClientError, asyncio.TimeoutError))
        async def _get() -> str:
            session = await self.ensure_session()
            async with session.get(url) as resp:
                resp.raise_for_status()
                return await resp.text()

        return await _get()

    async def __call__(self, major: int, minor: int) -> KubernetesVersion:
        """
        Raises:
            ValidationError: If the release cannot be fetched, is malformed,
                or belongs to a different minor.
        """
        url = STABLE_RELEASE_URL.format(major=major, minor=minor)
        try:
            text = await self._fetch(url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ValidationError(
                f"could not resolve the latest patch for {major}.{minor} from {url}: {exc}"
            ) from exc
        version = KubernetesVersion.parse(text)
        if (version.major, version.minor) != (major, minor):
            raise ValidationError(
                f"{url} returned {version}, expected a {major}.{minor}.x release"
            )
        logger.info("Resolved latest patch for %d.%d: %s", major, minor, version)
        return version


async def plan_upgrade(
    current: KubernetesVersion,
    target: KubernetesVersion,
    resolver: PatchResolver,
) -> UpgradePlan:
    """
    Builds the hop list from `current` to `target`.

    A patch upgrade or a single-minor step is one hop. Every skipped minor in
    between gets its own hop, resolved to that minor's latest patch, before
    landing on exactly `target`.

    Raises:
        ValidationError: On a downgrade, an equal version or a major change.
    """
    if target <= current:
        raise ValidationError(
            f"target version {target} must be newer than the current version {current}"
        )
    if target.major != current.major:
        raise ValidationError(
            f"cannot upgrade across major versions ({current} -> {target})"
        )

    hops: List[KubernetesVersion] = []
    for minor in range(current.minor + 1, target.minor):
        hops.append(await resolver(current.major, minor))
    hops.append(target)

    plan = UpgradePlan(current=current, target=target, hops=hops)
    if len(hops) > 1:
        logger.info("Upgrade plan: %s (%d hops)", plan, len(hops))
    return plan
