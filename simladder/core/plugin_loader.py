from __future__ import annotations

import importlib
import inspect
import logging
from importlib import metadata
from typing import Any, Dict, List, Optional

from .diagnostics import PluginError
from .plugin_api import (
    API_VERSION,
    CheckerPlugin,
    LayoutKernelPlugin,
    NormalizerPlugin,
    Plugin,
    PluginMeta,
    SolverAdapterPlugin,
)

logger = logging.getLogger(__name__)


PLUGIN_GROUPS = {
    "layout_kernel": "simladder.layout_kernel",
    "checker": "simladder.checker",
    "solver": "simladder.solver",
    "normalizer": "simladder.normalizer",
}

PLUGIN_BASES = {
    "layout_kernel": LayoutKernelPlugin,
    "checker": CheckerPlugin,
    "solver": SolverAdapterPlugin,
    "normalizer": NormalizerPlugin,
}


def _major(version: str) -> str:
    return version.split(".")[0]


class PluginRegistry:
    """Static registry of plugin providers keyed by kind and name.

    Providers are classes, factories or entry point loaders; ``get`` builds
    a fresh instance and checks its API major version against the host.
    """

    def __init__(self) -> None:
        self._registry: Dict[str, Dict[str, Any]] = {kind: {} for kind in PLUGIN_GROUPS}

    def register(self, kind: str, name: str, provider: Any) -> None:
        if kind not in PLUGIN_GROUPS:
            raise PluginError(f"Unknown plugin kind: {kind}", location="plugins")
        self._registry[kind][name] = provider

    def names(self, kind: str) -> List[str]:
        return sorted(self._registry.get(kind, {}))

    def discover(self, libs: Optional[List[str]] = None) -> None:
        for lib in libs or []:
            try:
                importlib.import_module(lib)
            except ImportError as exc:
                logger.warning("Plugin library %s could not be imported: %s", lib, exc)

        for kind, group in PLUGIN_GROUPS.items():
            for ep in metadata.entry_points(group=group):
                self.register(kind, ep.name, ep.load)

        # Fallback for editable/source usage without installed entry points.
        self._register_builtins()

    def get(self, kind: str, name: str) -> Plugin:
        if kind not in self._registry or name not in self._registry[kind]:
            raise PluginError(f"Plugin not found: {kind}:{name}", location=f"plugins.{kind}")
        plugin = _instantiate_plugin(self._registry[kind][name])
        _check_compatibility(plugin.meta())
        base = PLUGIN_BASES[kind]
        if not isinstance(plugin, base):
            raise PluginError(
                f"Plugin {kind}:{name} does not implement {base.__name__}",
                location=f"plugins.{kind}",
            )
        return plugin

    def _register_builtins(self) -> None:
        from simladder.plugins_builtin.checker_rules import RuleDeckChecker
        from simladder.plugins_builtin.kernel_baseline import BaselineSpiralKernel
        from simladder.plugins_builtin.normalizer_scalar import ScalarNormalizer
        from simladder.plugins_builtin.solver_analytic import AnalyticSpiralSolver
        from simladder.plugins_builtin.solver_external import ExternalSolverAdapter

        builtins = [
            ("layout_kernel", "baseline_spiral", BaselineSpiralKernel),
            ("checker", "rule_deck", RuleDeckChecker),
            ("solver", "analytic", AnalyticSpiralSolver),
            ("solver", "external", ExternalSolverAdapter),
            ("normalizer", "scalar", ScalarNormalizer),
        ]
        for kind, name, provider in builtins:
            self._registry[kind].setdefault(name, provider)


def _check_compatibility(meta: PluginMeta) -> None:
    if _major(meta.api_version) != _major(API_VERSION):
        raise PluginError(
            f"Plugin API version mismatch: host {API_VERSION} vs plugin {meta.api_version}",
            data={"plugin": meta.name},
        )


def _instantiate_plugin(provider: Any) -> Plugin:
    obj = provider
    if callable(obj) and not inspect.isclass(obj):
        obj = obj()
    if inspect.isclass(obj):
        obj = obj()
    if not hasattr(obj, "meta"):
        raise PluginError(f"Loaded plugin does not implement meta(): {type(obj)}")
    return obj
