import argparse
import dataclasses
import logging
import os
import sys

from botocore.exceptions import BotoCoreError, ClientError
from redis.exceptions import RedisError

from redis_compare import config
from redis_compare.errors import ConfigError, ConnectError
from redis_compare.failkeys import compare_from_file
from redis_compare.models import ScenarioType

logger = logging.getLogger("redis_compare")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def setup_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def run_exec(args) -> int:
    try:
        compare = config.load(args.file)
    except ConfigError as e:
        logger.error("%s", e)
        return 2
    overrides = {}
    if args.result_dir:
        overrides["result_dir"] = args.result_dir
    if args.s3_uri:
        overrides["s3_uri"] = args.s3_uri
    if args.reverse:
        overrides["reverse"] = True
    if args.reverse_only:
        overrides.update(reverse=True, forward=False)
    if overrides:
        compare = dataclasses.replace(compare, **overrides)
    results = compare.exec()
    return 1 if results else 0


def run_sample(args) -> int:
    compare = config.sample(args.scenario)
    path = args.out or f"compare_{args.scenario}.yml"
    config.dump(compare, path)
    print(f"{path} created!")
    return 0


def run_replay(args) -> int:
    try:
        fk = compare_from_file(args.artifact)
    except (OSError, ValueError, KeyError, TypeError, ConnectError, RedisError, BotoCoreError, ClientError) as e:
        logger.error("replay %s failed: %s", args.artifact, e)
        return 2
    if fk.keys:
        fk.log()
        return 1
    logger.info("no iffy keys left in %s", args.artifact)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="redis-compare",
        description="Compare data between redis instances after migration or replication",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "debug", "info", "warning", "error"],
        help="Log level (default: %(default)s)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_c = sub.add_parser("compare", help="Compare redis data by scenario description file")
    csub = p_c.add_subparsers(dest="compare_command", required=True)

    # exec
    p_e = csub.add_parser("exec", help="Execute compare task by yaml description file")
    p_e.add_argument("file", help="Scenario description file")
    p_e.add_argument(
        "--result-dir",
        dest="result_dir",
        default=os.environ.get("COMPARE_RESULT_DIR"),
        help="Directory for failure artifacts (overrides result_dir)",
    )
    p_e.add_argument(
        "--s3-uri",
        dest="s3_uri",
        default=os.environ.get("S3_URI"),
        help="S3 URI failure artifacts are uploaded to (e.g., s3://bucket/prefix)",
    )
    p_e.add_argument(
        "--reverse", action="store_true", help="Also check every target key exists in a source"
    )
    p_e.add_argument(
        "--reverse-only",
        dest="reverse_only",
        action="store_true",
        help="Only check every target key exists in a source, skip the forward compare",
    )
    p_e.set_defaults(func=run_exec)

    # sample
    p_s = csub.add_parser("sample", help="Generate a sample description file for a scenario")
    p_s.add_argument("scenario", choices=[s.value for s in ScenarioType])
    p_s.add_argument("-o", "--out", help="Output path (default: compare_<scenario>.yml)")
    p_s.set_defaults(func=run_sample)

    # replay
    p_r = csub.add_parser("replay", help="Re-check the keys of a failure artifact")
    p_r.add_argument("artifact", help="Local .cr file or s3:// URI")
    p_r.set_defaults(func=run_replay)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    try:
        return args.func(args)
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
