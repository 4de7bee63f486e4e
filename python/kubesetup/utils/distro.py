"""
kubesetup/utils/distro.py

Registry of distribution families the bundle supports.

Each DistroProvider names the payload modules under `distros/<family>/` and
the shell function implementing each capability. The bundler turns the
registry into one generated `distro_dispatch` function, so neither the
orchestrators nor the remote entry script ever build a function name from a
family string.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar, Dict, List, Tuple, Type

from kubesetup.models.errors import BundleError

CAPABILITIES = (
    "install_dependencies",
    "setup_container_runtime",
    "setup_kubernetes",
    "upgrade_packages",
)


class DistroProvider(ABC):
    """
    One distribution family. Capability methods return the name of the shell
    function (defined in this family's modules) that implements them.
    """

    family: ClassVar[str]
    modules: ClassVar[Tuple[str, ...]] = ("dependencies.sh", "runtime.sh", "kubernetes.sh")
    container_runtimes: ClassVar[Tuple[str, ...]] = ("containerd", "crio")

    @abstractmethod
    def install_dependencies(self) -> str: ...

    @abstractmethod
    def setup_container_runtime(self, cri: str) -> str: ...

    @abstractmethod
    def setup_kubernetes(self) -> str: ...

    @abstractmethod
    def upgrade_packages(self) -> str:
        """Function taking `<version> <package>...`."""

    def module_paths(self) -> List[str]:
        return [f"distros/{self.family}/{name}" for name in self.modules]

    def dispatch_table(self) -> List[Tuple[str, str]]:
        """(case pattern, function) pairs for this family."""
        table = [(f"{self.family}:install_dependencies", self.install_dependencies())]
        table += [
            (f"{self.family}:setup_container_runtime:{cri}", self.setup_container_runtime(cri))
            for cri in self.container_runtimes
        ]
        table += [
            (f"{self.family}:setup_kubernetes", self.setup_kubernetes()),
            (f"{self.family}:upgrade_packages", self.upgrade_packages()),
        ]
        return table


class FunctionTableProvider(DistroProvider):
    """A provider whose functions are declared as a class-level table."""

    functions: ClassVar[Dict[str, str]]

    def _lookup(self, key: str) -> str:
        try:
            return self.functions[key]
        except KeyError as exc:
            raise BundleError(f"distro '{self.family}' does not implement {key}") from exc

    def install_dependencies(self) -> str:
        return self._lookup("install_dependencies")

    def setup_container_runtime(self, cri: str) -> str:
        if cri not in self.container_runtimes:
            raise BundleError(f"distro '{self.family}' does not support container runtime '{cri}'")
        return self._lookup(f"setup_{cri}")

    def setup_kubernetes(self) -> str:
        return self._lookup("setup_kubernetes")

    def upgrade_packages(self) -> str:
        return self._lookup("upgrade_packages")


_REGISTRY: Dict[str, DistroProvider] = {}


def register_distro(cls: Type[DistroProvider]) -> Type[DistroProvider]:
    """Class decorator adding a provider to the registry, in declaration order."""
    if cls.family in _REGISTRY:
        raise BundleError(f"distro family '{cls.family}' registered twice")
    _REGISTRY[cls.family] = cls()
    return cls


def get_distro(family: str) -> DistroProvider:
    try:
        return _REGISTRY[family]
    except KeyError as exc:
        known = ", ".join(_REGISTRY)
        raise BundleError(f"unknown distro family '{family}' (known: {known})") from exc


def registered_distros() -> List[DistroProvider]:
    return list(_REGISTRY.values())


def render_dispatch(providers: List[DistroProvider]) -> str:
    """
    Renders the shell `distro_dispatch <capability> [args...]` function for
    `providers`. The runtime capability takes the CRI name as its first
    argument and folds it into the lookup key.
    """
    arms = [
        f'        {pattern}) {function} "$@" ;;'
        for provider in providers
        for pattern, function in provider.dispatch_table()
    ]
    return "\n".join(
        [
            "distro_dispatch() {",
            '    _capability="$1"',
            "    shift",
            '    if [ "$_capability" = setup_container_runtime ]; then',
            '        _capability="$_capability:$1"',
            "        shift",
            "    fi",
            '    case "${DISTRO_FAMILY}:${_capability}" in',
            *arms,
            "        *)",
            '            log_error "no ${_capability} implementation for distro family \'${DISTRO_FAMILY}\'"',
            "            return 1",
            "            ;;",
            "    esac",
            "}",
        ]
    )


@register_distro
class DebianProvider(FunctionTableProvider):
    family = "debian"
    functions = {
        "install_dependencies": "debian_install_dependencies",
        "setup_containerd": "debian_setup_containerd",
        "setup_crio": "debian_setup_crio",
        "setup_kubernetes": "debian_setup_kubernetes",
        "upgrade_packages": "debian_upgrade_packages",
    }


@register_distro
class RhelProvider(FunctionTableProvider):
    family = "rhel"
    functions = {
        "install_dependencies": "rhel_install_dependencies",
        "setup_containerd": "rhel_setup_containerd",
        "setup_crio": "rhel_setup_crio",
        "setup_kubernetes": "rhel_setup_kubernetes",
        "upgrade_packages": "rhel_upgrade_packages",
    }


@register_distro
class SuseProvider(FunctionTableProvider):
    family = "suse"
    functions = {
        "install_dependencies": "suse_install_dependencies",
        "setup_containerd": "suse_setup_containerd",
        "setup_crio": "suse_setup_crio",
        "setup_kubernetes": "suse_setup_kubernetes",
        "upgrade_packages": "suse_upgrade_packages",
    }


@register_distro
class ArchProvider(FunctionTableProvider):
    family = "arch"
    functions = {
        "install_dependencies": "arch_install_dependencies",
        "setup_containerd": "arch_setup_containerd",
        "setup_crio": "arch_setup_crio",
        "setup_kubernetes": "arch_setup_kubernetes",
        "upgrade_packages": "arch_upgrade_packages",
    }


@register_distro
class AlpineProvider(FunctionTableProvider):
    family = "alpine"
    container_runtimes = ("containerd",)
    functions = {
        "install_dependencies": "alpine_install_dependencies",
        "setup_containerd": "alpine_setup_containerd",
        "setup_kubernetes": "alpine_setup_kubernetes",
        "upgrade_packages": "alpine_upgrade_packages",
    }


@register_distro
class GenericProvider(FunctionTableProvider):
    family = "generic"
    container_runtimes = ("containerd",)
    functions = {
        "install_dependencies": "generic_install_dependencies",
        "setup_containerd": "generic_setup_containerd",
        "setup_kubernetes": "generic_setup_kubernetes",
        "upgrade_packages": "generic_upgrade_packages",
    }
