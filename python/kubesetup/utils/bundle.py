"""
kubesetup/utils/bundle.py

Builds the single self-contained shell script shipped to every node.

Layout of a bundle:

    #!/bin/sh
    set -eu
    BUNDLED_MODE=true

    # === lib/logging.sh ===
    ...                                   (needed modules, canonical order)
    # === distros/debian/dependencies.sh ===
    ...                                   (distro modules, grouped by family)
    # === generated: distro dispatch ===
    ...
    # === Main setup-k8s.sh ===
    ...                                   (entry script, shebang dropped)

The same payload tree and arguments always produce byte-identical output.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import aiofiles
from pydantic import BaseModel, ConfigDict

from kubesetup.models.errors import BundleError
from kubesetup.utils.distro import DistroProvider, get_distro, registered_distros, render_dispatch

logger = logging.getLogger(__name__)

PAYLOAD_DIR = Path(__file__).resolve().parent.parent / "payload"
ENTRY_SCRIPT = "setup-k8s.sh"
BUNDLE_HEADER = "#!/bin/sh\nset -eu\nBUNDLED_MODE=true\n"

CANONICAL_MODULES: Tuple[str, ...] = (
    "lib/logging.sh",
    "lib/helpers.sh",
    "lib/system.sh",
    "lib/kubeadm.sh",
    "lib/kubevip.sh",
    "commands/init.sh",
    "commands/join.sh",
    "commands/kube_vip.sh",
    "commands/upgrade.sh",
)

_NODE_SETUP = ("lib/logging.sh", "lib/helpers.sh", "lib/system.sh", "lib/kubeadm.sh", "lib/kubevip.sh")

# Remote subcommand -> modules it needs.
REMOTE_SUBCOMMAND_MODULES: Dict[str, Tuple[str, ...]] = {
    "init": _NODE_SETUP + ("commands/init.sh",),
    "join": _NODE_SETUP + ("commands/join.sh",),
    "kube-vip": ("lib/logging.sh", "lib/helpers.sh", "lib/kubevip.sh", "commands/kube_vip.sh"),
    "upgrade": ("lib/logging.sh", "lib/helpers.sh", "lib/kubeadm.sh", "commands/upgrade.sh"),
}

# Orchestrator entry subcommand -> remote subcommands it drives.
ENTRY_SUBCOMMANDS: Dict[str, Tuple[str, ...]] = {
    "deploy": ("init", "join", "kube-vip"),
    "upgrade": ("upgrade",),
}

_STRIP_RES = (
    re.compile(r"^source.*SCRIPT_DIR"),
    re.compile(r"^\. .*SCRIPT_DIR"),
    re.compile(r"^SCRIPT_DIR="),
)


class Bundle(BaseModel):
    """An immutable, fully rendered bundle."""

    model_config = ConfigDict(frozen=True)

    content: str
    modules: Tuple[str, ...]
    families: Tuple[str, ...]

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()

    async def write(self, path: str) -> str:
        """Writes the bundle to `path` with mode 700 and returns the path."""
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(self.content)
        os.chmod(path, 0o700)
        return path


def _strip_shebang(text: str) -> str:
    if text.startswith("#!"):
        _, _, rest = text.partition("\n")
        return rest
    return text


def _strip_source_lines(text: str) -> str:
    kept = [ln for ln in text.splitlines() if not any(r.match(ln) for r in _STRIP_RES)]
    return "\n".join(kept) + "\n"


class Bundler:
    """
    Renders bundles from a payload tree.

    Args:
        payload_dir: Root holding lib/, commands/, distros/ and the entry script.
        providers: Distro providers available to `build`; the registry by default.
    """

    def __init__(
        self,
        payload_dir: Optional[Path] = None,
        providers: Optional[Sequence[DistroProvider]] = None,
    ) -> None:
        self.payload_dir = Path(payload_dir) if payload_dir is not None else PAYLOAD_DIR
        self.providers: List[DistroProvider] = (
            list(providers) if providers is not None else registered_distros()
        )

    def _read(self, relative: str) -> str:
        path = self.payload_dir / relative
        if not path.is_file():
            raise BundleError(f"bundle module not found: {path}")
        return path.read_text(encoding="utf-8")

    def resolve_modules(self, subcommands: Iterable[str]) -> List[str]:
        """
        Returns the modules needed by `subcommands` (entry or remote names),
        deduplicated, in canonical order.

        Raises:
            BundleError: For an unknown subcommand.
        """
        needed = set()
        for name in subcommands:
            remote = ENTRY_SUBCOMMANDS.get(name, (name,))
            for sub in remote:
                if sub not in REMOTE_SUBCOMMAND_MODULES:
                    raise BundleError(f"unknown bundle subcommand '{name}'")
                needed.update(REMOTE_SUBCOMMAND_MODULES[sub])
        return [m for m in CANONICAL_MODULES if m in needed]

    def _select_providers(self, families: Optional[Iterable[str]]) -> List[DistroProvider]:
        if families is None:
            return list(self.providers)
        wanted = list(dict.fromkeys(families))
        known = {p.family: p for p in self.providers}
        selected = []
        for family in wanted:
            if family not in known:
                get_distro(family)  # raises with the list of known families
                raise BundleError(f"distro family '{family}' is not enabled for this bundler")
            selected.append(known[family])
        # registry order, not caller order
        return [p for p in self.providers if p in selected]

    def build(self, subcommands: Iterable[str], families: Optional[Iterable[str]] = None) -> Bundle:
        """
        Renders a bundle for `subcommands` supporting `families`.

        Args:
            subcommands: "deploy", "upgrade" or remote subcommand names.
            families: Distro families to include; every provider if None.

        Raises:
            BundleError: On an unknown subcommand or family, or a missing module.
        """
        modules = self.resolve_modules(subcommands)
        providers = self._select_providers(families)
        if not modules:
            raise BundleError("no subcommands requested")
        if not providers:
            raise BundleError("no distro families selected")

        sections = [BUNDLE_HEADER]
        for module in modules:
            sections.append(f"\n# === {module} ===\n{_strip_shebang(self._read(module))}")

        distro_modules: List[str] = []
        for provider in providers:
            for module in provider.module_paths():
                body = _strip_source_lines(_strip_shebang(self._read(module)))
                sections.append(f"\n# === {module} ===\n{body}")
                distro_modules.append(module)

        sections.append(f"\n# === generated: distro dispatch ===\n{render_dispatch(providers)}\n")
        entry = _strip_shebang(self._read(ENTRY_SCRIPT))
        sections.append(f"\n# === Main {ENTRY_SCRIPT} ===\n{entry}")

        bundle = Bundle(
            content="".join(sections),
            modules=tuple(modules + distro_modules),
            families=tuple(p.family for p in providers),
        )
        logger.info(
            "Bundle built: %d modules, distros=%s, sha256=%s",
            len(bundle.modules),
            ",".join(bundle.families),
            bundle.sha256[:12],
        )
        return bundle
