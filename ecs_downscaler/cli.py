"""Scale down the container instances of an ECS cluster.

Instances are picked by preference (old agent version, a given instance
type, few running tasks, then anything), drained in batches, and
terminated while the ECS service desired count and the Auto Scaling
Group capacity are lowered together.

    scale-down-ecs-instances --cluster prod --service web --asg prod-ecs \\
        --desired-count 10 --batch-size 2 --sort-age
"""
import argparse
import logging
import signal
import sys
import threading

from botocore.exceptions import BotoCoreError, ClientError

from ecs_downscaler.config import DEFAULT_REGION, Config
from ecs_downscaler.downscaler import run
from ecs_downscaler.errors import (
    ConfigurationError,
    DownscalerError,
    RunCancelled,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Scale down ECS hosts",
        formatter_class=argparse.RawDescriptionHelpFormatter)

    # Required parameters
    parser.add_argument(
        "--service", default="",
        help="The name of the ECS service to scale down.")
    parser.add_argument(
        "--cluster", default="",
        help="The name of ECS cluster that hosts the service.")
    parser.add_argument(
        "--asg", default="",
        help="The name of the Auto Scaling Group to scale down.")
    parser.add_argument(
        "--desired-count", type=int, default=0,
        help="The number of container instances the ECS cluster should run.")

    # Optional parameters
    parser.add_argument(
        "--batch-size", type=int, default=1,
        help="The number of ECS tasks or container instances to terminate "
             "in each batch.")
    parser.add_argument(
        "--instance-type",
        help="The container instance type that should be preferred for "
             "termination. If not provided or if there are no instances of "
             "this type, all instances are eligible for termination.")
    parser.add_argument(
        "--region", default=DEFAULT_REGION,
        help="The AWS region containing the resources.")
    parser.add_argument(
        "--instance-flip", action="store_true",
        help="Flip instances instead of scaling down.")
    parser.add_argument(
        "--sort-age", action="store_true",
        help="Sort instances in each group by instance age.")
    parser.add_argument(
        "--disable-task-count", action="store_true",
        help="Disable task count detection.")
    parser.add_argument(
        "--agent-version-before",
        help="Prefer killing instances with agent version older than X "
             "(exclusive) e.g. '1.39.0'.")
    parser.add_argument(
        "--allow-mismatch", action="store_true",
        help="Advanced: Allow mismatch between containers and instances.")

    parser.add_argument(
        "--wait-delay", type=float, default=15,
        help="Seconds between the first polls while waiting on AWS.")
    parser.add_argument(
        "--wait-max-attempts", type=int, default=120,
        help="Give up waiting on AWS after this many polls.")
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log debug output.")

    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    return Config(
        cluster=args.cluster,
        service=args.service,
        asg=args.asg,
        desired_count=args.desired_count,
        batch_size=args.batch_size,
        instance_type=args.instance_type,
        agent_version_threshold=args.agent_version_before,
        region=args.region,
        instance_flip=args.instance_flip,
        sort_by_age=args.sort_age,
        task_count_detect=not args.disable_task_count,
        allow_asg_mismatch=args.allow_mismatch,
        wait_delay=args.wait_delay,
        wait_max_attempts=args.wait_max_attempts,
        wait_max_delay=max(60, args.wait_delay),
    )


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s")
    for noisy in ("boto3", "botocore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    cancel = threading.Event()

    def handle_sigterm(signum, frame):
        logger.warning("Received SIGTERM, stopping after the current call")
        cancel.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, handle_sigterm)

    try:
        result = run(config_from_args(args), cancel=cancel)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2
    except RunCancelled as e:
        logger.error(str(e))
        return 130
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130
    except (DownscalerError, ClientError, BotoCoreError) as e:
        logger.error(str(e))
        return 1

    logger.info(f"Removed {result.removed} container instances in "
                f"{len(result.batches)} batches")
    return 0


if __name__ == "__main__":
    sys.exit(main())
