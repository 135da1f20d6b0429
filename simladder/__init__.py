"""simladder package."""

from .api import build, results, run, run_params
from .core.engine import PipelineHandle, SimEngine
from .core.version import __version__

__all__ = ["PipelineHandle", "SimEngine", "build", "results", "run", "run_params", "__version__"]
