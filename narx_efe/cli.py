"""CLI for the NARX agent.

Provides commands:
- narx-efe run: Run a closed-loop pendulum trial from a YAML config
- narx-efe init-config: Write a default configuration file
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import numpy as np

from narx_efe.agents import NARXAgent
from narx_efe.config import NARXConfig, load_config, save_config
from narx_efe.exceptions import NARXError
from narx_efe.tasks import Pendulum, swing_up_goals

logger = logging.getLogger(__name__)


def cmd_run(args: argparse.Namespace) -> int:
    """Run a swing-up trial."""
    try:
        config = load_config(args.config) if args.config else NARXConfig()
        if args.objective:
            config.planner.objective = args.objective
        if args.time_limit is not None:
            config.planner.time_limit = args.time_limit

        config.validate()
        system = Pendulum.from_config(config.simulator, config.control_lims)
        goals = swing_up_goals(args.steps + config.time_horizon, args.target, args.goal_variance)
        agent = NARXAgent(config, goals=goals)
        trajectory = agent.run(system, n_steps=args.steps, progress=args.progress)
    except NARXError as e:
        logger.error(f"Trial aborted: {e}")
        return 2

    observations = trajectory.get_observations()
    summary = {
        "objective": trajectory.objective_name,
        "n_steps": trajectory.n_steps,
        "final_observation": float(observations[-1]),
        "mean_abs_error": float(np.mean(np.abs(observations - args.target))),
        "mean_free_energy": float(np.mean(trajectory.get_free_energy())),
        "n_timeouts": trajectory.n_timeouts(),
    }

    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w") as f:
            json.dump(trajectory.to_dict(), f)
        summary["output"] = str(out)

    print(json.dumps(summary, indent=2))
    return 0


def cmd_init_config(args: argparse.Namespace) -> int:
    """Write a default configuration file."""
    path = save_config(NARXConfig(), args.path)
    print(f"Wrote {path}")
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="narx-efe",
        description="Bayesian NARX agent with expected free energy planning",
    )
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging verbosity")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run a pendulum swing-up trial")
    run_parser.add_argument("--config", type=str, help="YAML configuration file")
    run_parser.add_argument("--steps", type=int, default=100, help="Number of control steps")
    run_parser.add_argument("--objective", choices=["efe", "qcr"],
                            help="Override the planning objective")
    run_parser.add_argument("--time-limit", type=float,
                            help="Override the per-step planning budget (s)")
    run_parser.add_argument("--target", type=float, default=float(np.pi),
                            help="Target angle (rad)")
    run_parser.add_argument("--goal-variance", type=float, default=1e-4,
                            help="Variance of the goal distribution")
    run_parser.add_argument("--output", type=str, help="Write the trajectory as JSON")
    run_parser.add_argument("--progress", action="store_true", help="Show a progress bar")
    run_parser.set_defaults(func=cmd_run)

    # Init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument("path", nargs="?", default="narx_efe.yaml",
                             help="Destination path")
    init_parser.set_defaults(func=cmd_init_config)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
