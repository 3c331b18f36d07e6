from __future__ import annotations

from .cli import build_arg_parser, configure_logging, run_cli


def main() -> int:
    parser = build_arg_parser()
    args = parser.parse_args()
    try:
        configure_logging(args.log_level)
    except ValueError as exc:
        parser.error(str(exc))
    return run_cli(args)


if __name__ == "__main__":
    raise SystemExit(main())
