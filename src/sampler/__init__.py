"""Sampling orchestrator: run trials against the target and log them.

Typical usage::

    from src.sampler import RunController, load_sampler_config

    config = load_sampler_config("configs/sampler.yaml")
    exit_code = RunController(config, driver, output_dir, base_url, preflight).run()
"""

from src.sampler.config import SamplerConfig, apply_overrides, load_sampler_config
from src.sampler.coverage import CoverageTracker, coverage_target
from src.sampler.failures import (
    ErrorCode,
    FailureKind,
    RunFatalError,
    SamplerError,
    classify,
    error_code,
)
from src.sampler.manifest import PackManifest, load_manifest
from src.sampler.persistence import MetadataStore, TrialLog, load_progress
from src.sampler.records import RunMetadata, TrialRecord
from src.sampler.recovery import RecoveryController, RecoveryPhase, RecoveryState
from src.sampler.runner import RunController

__all__ = [
    "SamplerConfig",
    "apply_overrides",
    "load_sampler_config",
    "CoverageTracker",
    "coverage_target",
    "ErrorCode",
    "FailureKind",
    "RunFatalError",
    "SamplerError",
    "classify",
    "error_code",
    "PackManifest",
    "load_manifest",
    "MetadataStore",
    "TrialLog",
    "load_progress",
    "RunMetadata",
    "TrialRecord",
    "RecoveryController",
    "RecoveryPhase",
    "RecoveryState",
    "RunController",
]
