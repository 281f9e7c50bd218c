"""
Interactive entry point: checks prerequisites, collects credentials and S3
settings, then runs one benchmark pod through the JobOrchestrator and reports
the result.

    python orchestrator.py --bucket my-bucket
"""
import argparse
import getpass
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple

from coordinator import JobOrchestrator
from errors import GatewayError, PrerequisiteError, TemplateError
from gateway import TRANSPORTS, make_gateway
from manifest import build_pod_manifest, dump_manifest, render_template, template_params
from models.job import (
    DEFAULT_BENCH_TIMEOUT,
    DEFAULT_ENDPOINT,
    DEFAULT_INIT_DEADLINE,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_NAMESPACE,
    DEFAULT_OVERALL_DEADLINE,
    DEFAULT_POD_NAME,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_READY_DEADLINE,
    DEFAULT_REGION,
    DEFAULT_SAMPLE_COUNT,
    DEFAULT_SECRET_NAME,
    DEFAULT_SKIP_FILTERS,
    EXIT_ABORTED,
    BenchmarkSettings,
    JobRequest,
    RunResult,
    S3Credentials,
    S3Target,
    Toleration,
)
from preflight import TOLERATION_MODES, check_prerequisites
from results import format_record, summarize
from streamer import LOG_FILE_PATTERN, open_log_artifact

logger = logging.getLogger(__name__)

RULE = "━" * 56
SHUTDOWN_SIGNAL_RECEIVED = False


# --- Logging Setup ---
def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # The API client logs every request at DEBUG, including secret bodies.
    logging.getLogger("kubernetes").setLevel(logging.INFO)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# --- Signal Handling ---
def signal_handler(signum, frame):
    """Turns the first SIGINT/SIGTERM into a KeyboardInterrupt; later ones are ignored while cleanup runs."""
    global SHUTDOWN_SIGNAL_RECEIVED
    if SHUTDOWN_SIGNAL_RECEIVED:
        logger.warning(f"Received signal {signum} again. Cleanup is already in progress.")
        return
    SHUTDOWN_SIGNAL_RECEIVED = True
    logger.warning(f"Received signal {signal.Signals(signum).name}. Initiating shutdown...")
    raise KeyboardInterrupt


# --- Operator Prompts ---
def prompt(label: str, default: Optional[str] = None, input_fn: Optional[Callable[[str], str]] = None) -> str:
    input_fn = input_fn or input
    suffix = f" (default: {default})" if default else ""
    value = input_fn(f"{label}{suffix}: ").strip()
    return value or (default or "")


def collect_request(args: argparse.Namespace, tolerations: Tuple[Toleration, ...] = (),
                    input_fn: Optional[Callable[[str], str]] = None,
                    secret_fn: Optional[Callable[[str], str]] = None) -> JobRequest:
    """
    Builds the JobRequest from flags, AWS_* environment variables and, for
    anything still missing, interactive prompts.

    Raises:
        ValueError: If a required value is missing or invalid.
    """
    secret_fn = secret_fn or getpass.getpass
    interactive = not args.non_interactive

    def value(current: Optional[str], env: Optional[str], label: str, default: Optional[str] = None,
              secret: bool = False, optional: bool = False) -> Optional[str]:
        current = current or (os.environ.get(env) if env else None)
        if current or not interactive:
            return current or default
        if secret:
            return secret_fn(f"{label}: ").strip() or None
        return prompt(label, default, input_fn) or (None if optional else default)

    if interactive:
        print("AWS Credentials Setup")
        print("Please provide your AWS credentials (they will be stored as a Kubernetes secret):\n")
    access_key_id = value(args.access_key_id, "AWS_ACCESS_KEY_ID", "AWS_ACCESS_KEY_ID")
    secret_access_key = value(None, "AWS_SECRET_ACCESS_KEY", "AWS_SECRET_ACCESS_KEY", secret=True)
    session_token = value(args.session_token, "AWS_SESSION_TOKEN",
                          "AWS_SESSION_TOKEN (optional, press Enter to skip)", secret=True, optional=True)
    endpoint = value(args.endpoint, None, "S3 Endpoint", DEFAULT_ENDPOINT)
    bucket = value(args.bucket, None, "S3 Bucket")
    region = value(args.region, None, "S3 Region", DEFAULT_REGION)

    return JobRequest(
        credentials=S3Credentials(access_key_id or "", secret_access_key or "", session_token or None),
        target=S3Target(endpoint=endpoint or DEFAULT_ENDPOINT, bucket=bucket or "", region=region or DEFAULT_REGION),
        pod_name=args.pod_name,
        namespace=args.namespace,
        secret_name=args.secret_name,
        settings=BenchmarkSettings(
            max_concurrent=args.max_concurrent,
            sample_count=args.sample_count,
            timeout_seconds=args.bench_timeout,
            skip_filters=tuple(args.skip) if args.skip is not None else DEFAULT_SKIP_FILTERS,
        ),
        tolerations=tolerations,
        require_session_token=args.require_session_token,
        poll_interval=args.poll_interval,
        init_deadline=args.init_deadline,
        ready_deadline=args.ready_deadline,
        overall_deadline=args.overall_deadline,
    )


def confirm(request: JobRequest, log_path: Path, input_fn: Optional[Callable[[str], str]] = None) -> bool:
    input_fn = input_fn or input
    print(f"\n{RULE}\nConfiguration Summary:")
    print(f"  Endpoint: {request.target.endpoint}")
    print(f"  Bucket: {request.target.bucket}")
    print(f"  Region: {request.target.region}")
    print(f"  Namespace: {request.namespace}")
    print(f"  Tolerations: {', '.join(t.key + '=' + t.value for t in request.tolerations) or 'none'}")
    print(f"  Log file: {log_path}")
    print(f"{RULE}\n")
    return input_fn("Proceed with benchmark? (y/n): ").strip().lower() == "y"


def print_summary(result: RunResult) -> None:
    print(f"\n{RULE}\nBenchmark Summary\n{RULE}\n")
    print(f"Run Status: {result.phase.value}")
    print(f"Init Exit Code: {'N/A' if result.init_exit_code is None else result.init_exit_code}")
    print(f"Exit Code: {'N/A' if result.main_exit_code is None else result.main_exit_code}")
    print(f"Duration: {result.duration:.1f}s")
    print(f"Log File: {result.log_path or 'N/A'}")
    if result.reason:
        print(f"Reason: {result.reason}")
    print()

    if result.succeeded:
        print("Benchmark completed successfully!")
        summary = summarize(result.logs)
        if summary.empty:
            print("No result lines found in the benchmark output.")
        else:
            print("Results Summary:")
            for record in summary.records:
                print(f"  {format_record(record)}")
            for line in summary.headlines:
                print(f"  {line}")
    else:
        print(f"Benchmark completed with status: {result.phase.value}")

    for ref in result.leaked:
        print(f"WARNING: {ref} could not be deleted; remove it manually.")


# --- Main ---
def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the OpenDAL S3 benchmark as a one-shot Kubernetes pod",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    s3_group = parser.add_argument_group("S3 Target (prompted for when omitted)")
    s3_group.add_argument("--endpoint", type=str, default=None, help=f"S3 endpoint host (prompt default: {DEFAULT_ENDPOINT})")
    s3_group.add_argument("--bucket", type=str, default=None, help="S3 bucket")
    s3_group.add_argument("--region", type=str, default=None, help=f"S3 region (prompt default: {DEFAULT_REGION})")
    s3_group.add_argument("--access-key-id", type=str, default=None, help="AWS access key id (or AWS_ACCESS_KEY_ID)")
    s3_group.add_argument("--session-token", type=str, default=None, help="AWS session token (or AWS_SESSION_TOKEN)")
    s3_group.add_argument("--require-session-token", action="store_true",
                          help="Fail when no session token is given instead of running without one")

    k8s_group = parser.add_argument_group("Cluster")
    k8s_group.add_argument("--transport", choices=TRANSPORTS, default="api", help="How to talk to the cluster")
    k8s_group.add_argument("--context", type=str, default=None, help="Kubeconfig context to use")
    k8s_group.add_argument("--namespace", type=str, default=DEFAULT_NAMESPACE)
    k8s_group.add_argument("--pod-name", type=str, default=DEFAULT_POD_NAME)
    k8s_group.add_argument("--secret-name", type=str, default=DEFAULT_SECRET_NAME)
    k8s_group.add_argument("--tolerations", choices=TOLERATION_MODES, default="auto",
                           help="Add the bench_test node group toleration")
    k8s_group.add_argument("--manifest-template", type=str, default=None,
                           help="YAML pod template with {{PLACEHOLDER}} fields, instead of the built-in manifest")

    bench_group = parser.add_argument_group("Benchmark")
    bench_group.add_argument("--max-concurrent", type=int, default=DEFAULT_MAX_CONCURRENT)
    bench_group.add_argument("--sample-count", type=int, default=DEFAULT_SAMPLE_COUNT)
    bench_group.add_argument("--bench-timeout", type=int, default=DEFAULT_BENCH_TIMEOUT, help="Seconds")
    bench_group.add_argument("--skip", action="append", default=None,
                             help=f"Benchmark filter to skip, repeatable (default: {' '.join(DEFAULT_SKIP_FILTERS)})")

    timing_group = parser.add_argument_group("Timing")
    timing_group.add_argument("--poll-interval", type=float, default=DEFAULT_POLL_INTERVAL, help="Seconds between status checks")
    timing_group.add_argument("--init-deadline", type=float, default=DEFAULT_INIT_DEADLINE, help="Seconds for the connectivity check")
    timing_group.add_argument("--ready-deadline", type=float, default=DEFAULT_READY_DEADLINE, help="Seconds for the benchmark container to start")
    timing_group.add_argument("--overall-deadline", type=float, default=DEFAULT_OVERALL_DEADLINE, help="Seconds for the whole run")

    run_group = parser.add_argument_group("Run")
    run_group.add_argument("--log-dir", type=str, default=".", help="Directory for the results log")
    run_group.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    run_group.add_argument("--non-interactive", action="store_true", help="Never prompt; take values from flags and env")
    run_group.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    print(f"{RULE}\nOPENDAL S3 Benchmark - Interactive Setup\n{RULE}\n")
    try:
        gateway = make_gateway(args.transport, context=args.context)
        if args.transport == "kubectl":
            logger.info(f"kubectl found: {gateway.check_available()}")
        profile = check_prerequisites(gateway, args.namespace, args.tolerations)
        request = collect_request(args, profile.tolerations)
        if args.manifest_template:
            manifest = render_template(Path(args.manifest_template), template_params(request))
        else:
            manifest = build_pod_manifest(request)
    except (PrerequisiteError, GatewayError, TemplateError, ValueError) as e:
        logger.error(f"ERROR: {e}")
        return 1
    except (KeyboardInterrupt, EOFError):
        print("\nAborted.")
        return EXIT_ABORTED

    now = datetime.now()
    log_path = Path(args.log_dir) / now.strftime(LOG_FILE_PATTERN)
    try:
        if not args.yes and not confirm(request, log_path):
            print("Aborted.")
            return 0
    except (KeyboardInterrupt, EOFError):
        print("\nAborted.")
        return EXIT_ABORTED

    log_path, artifact = open_log_artifact(args.log_dir, now)
    log_path.with_suffix(".manifest.yaml").write_text(dump_manifest(manifest), encoding="utf-8")

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    with artifact:
        result = JobOrchestrator(
            gateway, request, manifest,
            output=sys.stdout.buffer, artifact=artifact, log_path=str(log_path),
        ).run()

    print_summary(result)
    print(f"\nDone! Full results saved to: {log_path}")
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
