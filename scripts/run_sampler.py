#!/usr/bin/env python
"""CLI entry point: sample packs of the coupled visualizer.

Serves the target (or reuses a running dev server), opens a browser via
Selenium and records one ``trials.log`` line per trial until every pack
reaches its coverage target or the wall-clock budget runs out::

    # Two packs to 99 % coverage, 10 h budget:
    python scripts/run_sampler.py --packs pack-a,pack-b

    # Continue an interrupted run:
    python scripts/run_sampler.py --packs pack-a,pack-b \\
        --output-dir output/coupled-eval_20260101_120000 --resume

    # Settings from YAML, flags override:
    python scripts/run_sampler.py --config configs/sampler.yaml --max-hours 2

    # Visible browser, accept software WebGL:
    python scripts/run_sampler.py --packs pack-a --headed --no-require-gpu

Only one sampler may write a given output directory at a time; nothing
enforces this.

Exit codes: 0 on completion (including a budget stop), 1 on a fatal run
error (see ``meta.json`` ``error``), 2 on usage errors.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from scripts._cli_utils import default_run_dir, setup_logging  # noqa: E402
from src.driver.base import GPU_MODES  # noqa: E402
from src.sampler.config import (  # noqa: E402
    AUDIO_MODES,
    PICK_STRATEGIES,
    SamplerConfig,
    apply_overrides,
    load_sampler_config,
)
from src.sampler.persistence import RUN_LOG  # noqa: E402

logger = logging.getLogger(__name__)

EXIT_FATAL = 1
EXIT_USAGE = 2


def _split_packs(values: list[str] | None) -> list[str] | None:
    if not values:
        return None
    packs: list[str] = []
    for value in values:
        packs.extend(p.strip() for p in value.split(",") if p.strip())
    return packs


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Every sampler setting defaults to ``None`` so that values from
    ``--config`` survive unless a flag is given.

    Parameters
    ----------
    argv : list[str] or None
        Command-line arguments.  If None, uses ``sys.argv[1:]``.

    Returns
    -------
    argparse.Namespace
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description=(
            "Sample coupled-preset packs of the visualizer and log one record per trial.  "
            "Only one sampler may write a given output directory at a time."
        ),
    )
    parser.add_argument(
        "--pack",
        "--packs",
        dest="packs",
        action="append",
        default=None,
        metavar="PACK[,PACK...]",
        help="Pack(s) to sample, in order.  Repeatable and/or comma-separated.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Sampler config YAML.  Flags override its values.",
    )
    parser.add_argument(
        "--pick",
        type=str,
        default=None,
        choices=list(PICK_STRATEGIES),
        help="Pick strategy of the target (default: random).  'shuffle' seeds unseen pairs first.",
    )
    parser.add_argument(
        "--coverage",
        type=float,
        default=None,
        help="Fraction of each pack to visit, clamped to [0.01, 1] (default: 0.99)",
    )
    parser.add_argument(
        "--target-samples",
        type=int,
        default=None,
        help="Stop each pack after N recorded trials instead of by coverage",
    )
    parser.add_argument(
        "--max-hours",
        type=float,
        default=None,
        help="Wall-clock budget of the whole run (default: 10, minimum 0.12)",
    )
    parser.add_argument(
        "--reload-every",
        type=int,
        default=None,
        help="Soft reset every N iterations, 0 disables (default: 800)",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue the run in --output-dir, replaying its trials.log",
    )
    parser.add_argument(
        "--trial-timeout",
        dest="trial_timeout_s",
        type=float,
        default=None,
        help="Seconds for each wait inside a trial (default: 10)",
    )
    parser.add_argument(
        "--nav-timeout",
        dest="nav_timeout_s",
        type=float,
        default=None,
        help="Page load timeout per navigation attempt (default: 30)",
    )
    parser.add_argument(
        "--ready-timeout",
        dest="ready_timeout_s",
        type=float,
        default=None,
        help="Seconds to wait for the target to become interactive (default: 60)",
    )
    parser.add_argument(
        "--stuck-max-consecutive",
        type=int,
        default=None,
        help="Consecutive transient failures before a soft reset (default: 3)",
    )
    parser.add_argument(
        "--max-recoveries",
        type=int,
        default=None,
        help="Soft resets before escalating to a session restart (default: 6)",
    )
    parser.add_argument(
        "--max-restarts",
        type=int,
        default=None,
        help="Session restarts allowed over the run (default: 20)",
    )
    parser.add_argument("--luma-min", type=float, default=None, help="too-dark threshold")
    parser.add_argument("--luma-max", type=float, default=None, help="too-bright threshold")
    parser.add_argument("--motion-min", type=float, default=None, help="low-motion threshold")
    parser.add_argument(
        "--audio-mode",
        type=str,
        default=None,
        choices=list(AUDIO_MODES),
        help="Signal source: auto (file, then click-track), file, synthetic, none",
    )
    parser.add_argument(
        "--audio-file",
        type=str,
        default=None,
        help="Audio file fed to the target in 'auto' and 'file' modes",
    )
    parser.add_argument(
        "--require-signal",
        action="store_true",
        help="Treat a missing signal as fatal (with --audio-mode none)",
    )
    parser.add_argument(
        "--browser",
        type=str,
        default=None,
        choices=["chrome", "edge", "firefox"],
        help="Browser to use (default: chrome)",
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window",
    )
    parser.add_argument(
        "--gpu-mode",
        type=str,
        default=None,
        choices=list(GPU_MODES),
        help="Browser GPU flags: off, safe or force-d3d11 (default: safe)",
    )
    parser.add_argument(
        "--require-gpu",
        dest="require_gpu",
        action="store_const",
        const=True,
        default=None,
        help="Fail when WebGL falls back to SwiftShader (default: on when --headed)",
    )
    parser.add_argument(
        "--no-require-gpu",
        dest="require_gpu",
        action="store_const",
        const=False,
        help="Accept a software WebGL renderer even when headed",
    )
    parser.add_argument(
        "--target-config",
        type=str,
        default=None,
        help="Target config name under configs/targets (default: coupled-viz)",
    )
    parser.add_argument(
        "--manifest-root",
        type=str,
        default=None,
        help="Directory with <pack>/<manifest>; relative to the target app dir",
    )
    parser.add_argument(
        "--manifest-name",
        type=str,
        default=None,
        help="Manifest file name per pack (default: pairs-manifest.v0.json)",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Run directory (default: output/coupled-eval_<timestamp>)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed of the priority-order shuffle",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug-level logging",
    )

    args = parser.parse_args(argv)
    args.packs = _split_packs(args.packs)
    return args


def build_config(args: argparse.Namespace) -> tuple[SamplerConfig, list[str]]:
    """Merge ``--config`` YAML and flags into a validated config.

    Returns the config and the warnings raised while clamping it.

    Raises
    ------
    FileNotFoundError, ValueError
        On a missing config file or invalid values.
    """
    config = load_sampler_config(args.config) if args.config else SamplerConfig()
    overrides = {
        "packs": args.packs,
        "pick": args.pick,
        "coverage": args.coverage,
        "target_samples": args.target_samples,
        "max_hours": args.max_hours,
        "reload_every": args.reload_every,
        "resume": True if args.resume else None,
        "trial_timeout_s": args.trial_timeout_s,
        "nav_timeout_s": args.nav_timeout_s,
        "ready_timeout_s": args.ready_timeout_s,
        "stuck_max_consecutive": args.stuck_max_consecutive,
        "max_recoveries": args.max_recoveries,
        "max_restarts": args.max_restarts,
        "luma_min": args.luma_min,
        "luma_max": args.luma_max,
        "motion_min": args.motion_min,
        "audio_mode": args.audio_mode,
        "audio_file": args.audio_file,
        "require_signal": True if args.require_signal else None,
        "browser": args.browser,
        "headed": True if args.headed else None,
        "gpu_mode": args.gpu_mode,
        "require_gpu": args.require_gpu,
        "target_config": args.target_config,
        "manifest_root": args.manifest_root,
        "manifest_name": args.manifest_name,
        "output_dir": args.output_dir,
        "seed": args.seed,
    }
    config = apply_overrides(config, overrides)
    return config, config.validate()


def main(argv: list[str] | None = None) -> int:
    """Run the sampler.

    Parameters
    ----------
    argv : list[str] or None
        Command-line arguments.

    Returns
    -------
    int
        Exit code.
    """
    args = parse_args(argv)
    try:
        config, warnings = build_config(args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    if config.resume and not config.output_dir:
        print("error: --resume requires --output-dir", file=sys.stderr)
        return EXIT_USAGE

    output_dir = Path(config.output_dir) if config.output_dir else default_run_dir()
    output_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(args.verbose, output_dir / RUN_LOG)

    from src.driver.selenium_driver import SeleniumDriver
    from src.sampler.runner import RunController, record_startup_failure
    from src.target_loader import (
        TargetLoaderError,
        create_loader,
        http_probe,
        load_target_config,
    )

    try:
        target = load_target_config(config.target_config)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("%s", exc)
        return EXIT_USAGE

    manifest_root = Path(config.manifest_root)
    if not manifest_root.is_absolute():
        manifest_root = Path(target.app_dir) / manifest_root

    logger.info(
        "Sampling %s into %s (target %s, manifests %s)",
        ",".join(config.packs),
        output_dir,
        target.name,
        manifest_root,
    )

    loader = create_loader(target)
    try:
        try:
            loader.setup()
            loader.start()
        except TargetLoaderError as exc:
            code = record_startup_failure(output_dir, exc, phase="target")
            logger.error("Run failed [%s]: %s", code.value, exc)
            return EXIT_FATAL

        driver = SeleniumDriver(
            browser=config.browser,
            headless=not config.headed,
            gpu_mode=config.gpu_mode,
            window_size=(target.window_width, target.window_height),
            workdir=output_dir,
        )
        controller = RunController(
            config,
            driver,
            output_dir=output_dir,
            base_url=loader.url or target.url,
            preflight=http_probe,
            manifest_root=manifest_root,
            warnings=warnings,
        )
        exit_code = controller.run()
    finally:
        loader.stop()

    logger.info("Results in %s (exit %d)", output_dir, exit_code)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
