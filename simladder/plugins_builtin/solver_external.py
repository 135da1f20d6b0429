from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from simladder.core.diagnostics import AdapterError
from simladder.core.external import run_external
from simladder.core.models import FrequencyPlan, LayoutRevision, RawResult, SolverSettings
from simladder.core.plugin_api import PluginMeta, SolverAdapterPlugin, SolverContext

logger = logging.getLogger(__name__)

MOCK_COMMAND = [sys.executable, "-m", "simladder.plugins_builtin.mock_em", "{input}", "{output}"]


class ExternalSolverAdapter(SolverAdapterPlugin):
    """Runs a solver executable per job and reads back a metrics JSON.

    Tier settings:
      command          argv list; ``{input}``, ``{output}`` and ``{work_dir}``
                       are substituted. Defaults to the bundled mock EM solver.
      tool_version     recorded with every run.
      side_effect_free whether a timed-out or failed run may be repeated.
    """

    def meta(self) -> PluginMeta:
        return PluginMeta(
            name="external",
            api_version="1.0.0",
            plugin_version="0.1.0",
            capabilities={
                "capabilities_version": "1.0.0",
                "plugin_kind": "solver",
                "io": {
                    "inputs": [{"name": "revision", "category": "data", "data_kind": "layout_revision"}],
                    "outputs": [{"name": "metrics.json", "category": "artifact", "artifact_kind": "metrics.json"}],
                },
                "features": {"side_effect_free": False, "fidelity": "external"},
            },
        )

    def side_effect_free(self, settings: Optional[SolverSettings] = None) -> bool:
        if settings is not None and "side_effect_free" in settings.values:
            return bool(settings.get("side_effect_free"))
        return super().side_effect_free(settings)

    def cancel(self, job_id: str) -> None:
        # The subprocess watches the job's cancel event; nothing else to release.
        logger.info("Cancel requested for external job %s", job_id)

    async def run(
        self,
        revision: LayoutRevision,
        settings: SolverSettings,
        plan: FrequencyPlan,
        ctx: SolverContext,
    ) -> RawResult:
        ctx.work_dir.mkdir(parents=True, exist_ok=True)
        input_path = ctx.work_dir / f"input.{ctx.attempt}.json"
        output_path = ctx.work_dir / f"output.{ctx.attempt}.json"
        request = {
            "revision": revision.to_dict(),
            "settings": settings.values,
            "frequencies": plan.frequencies(),
        }
        input_path.write_text(json.dumps(request, indent=2, sort_keys=True), encoding="utf-8")

        cmd = _render_command(
            settings.get("command") or MOCK_COMMAND,
            {"input": str(input_path), "output": str(output_path), "work_dir": str(ctx.work_dir)},
        )
        result = await run_external(
            cmd,
            cwd=ctx.work_dir,
            logs_dir=ctx.logs_dir,
            name=f"{self.meta().name}.{ctx.attempt}",
            env={**os.environ, **ctx.env} if ctx.env else None,
            timeout_s=ctx.remaining(),
            cancel_event=ctx.cancel_event,
        )
        raw = RawResult(metrics={})
        self.record_external_run(
            result, ctx, raw, tool_version=str(settings.get("tool_version") or "mock-em-0.1")
        )
        if result.returncode != 0:
            raise AdapterError(
                f"Solver exited with {result.returncode}; see {result.stderr}",
                data={"cmd": result.cmd, "returncode": result.returncode},
            )
        try:
            payload = json.loads(output_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise AdapterError(f"Solver output unreadable: {exc}") from exc
        if not isinstance(payload.get("metrics"), dict):
            raise AdapterError("Solver output has no metrics mapping", retryable=False)

        raw.metrics = dict(payload["metrics"])
        raw.uncertainty = payload.get("uncertainty")
        raw.payload = payload
        return raw


def _render_command(template: List[Any], values: Dict[str, str]) -> List[str]:
    if isinstance(template, str):
        raise AdapterError("command must be an argv list, not a string", retryable=False)
    return [str(part).format(**values) for part in template]
