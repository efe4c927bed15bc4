"""Entry point: python -m perch.dashboard"""

import argparse
import logging
import sys
from pathlib import Path

from ..config import load_config
from ..errors import ConfigError
from .app import PerchDashboard


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="perch", description="Gas Town fleet dashboard")
    parser.add_argument("--town", help="Town root (defaults to $GT_ROOT or ~/gt)")
    parser.add_argument("--config", help="Config file (defaults to ~/.perch/config.yaml)")
    args = parser.parse_args(argv)

    try:
        config = load_config(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"perch: {e}", file=sys.stderr)
        sys.exit(1)
    if args.town:
        config = config.with_town(args.town)

    config.log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(config.log_path),
        level=logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger = logging.getLogger("perch")
    try:
        app = PerchDashboard(config)
        app.run()
    except Exception:
        logger.exception("Dashboard crashed")
        raise


if __name__ == "__main__":
    main()
