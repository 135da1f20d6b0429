from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .core.config import EngineConfig, parse_engine_config
from .core.engine import SimEngine
from .core.models import SimResult
from .core.pipeline import PipelineRecord
from .core.plugin_loader import PluginRegistry


def build(
    config: Union[Dict[str, Any], EngineConfig],
    *,
    root: Union[Path, str, None] = None,
    registry: Optional[PluginRegistry] = None,
) -> SimEngine:
    if not isinstance(config, EngineConfig):
        config = parse_engine_config(config)
    root_path = Path(root) if root is not None else None
    return SimEngine(config, root=root_path, registry=registry)


async def run_params(
    config: Union[Dict[str, Any], EngineConfig],
    params: Dict[str, Any],
    *,
    budget: Optional[float] = None,
    root: Union[Path, str, None] = None,
    registry: Optional[PluginRegistry] = None,
) -> PipelineRecord:
    async with build(config, root=root, registry=registry) as engine:
        handle = engine.submit_params(params, budget=budget)
        return await engine.wait(handle)


def run(
    config: Union[Dict[str, Any], EngineConfig],
    params: Dict[str, Any],
    *,
    budget: Optional[float] = None,
    root: Union[Path, str, None] = None,
) -> PipelineRecord:
    return asyncio.run(run_params(config, params, budget=budget, root=root))


def results(
    config: Union[Dict[str, Any], EngineConfig],
    revision_id: str,
    *,
    root: Union[Path, str, None] = None,
) -> List[SimResult]:
    return build(config, root=root).get_results(revision_id)
