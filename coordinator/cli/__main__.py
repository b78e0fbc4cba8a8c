"""
Coordinator CLI - talk to a running coordinator from the command line.

Usage:
    coordinator post-job --image IMG --cmd CMD --price ETH [--requester ADDR]
    coordinator fund --job ID [--tx HASH]
    coordinator match --job ID --provider ADDR
    coordinator submit-result --job ID --sha256 HASH [--path P] [--size N]
    coordinator status --job ID
    coordinator transitions --job ID
    coordinator accept --job ID [--provider ADDR]
    coordinator cancel --job ID
    coordinator list [--status S] [--provider ADDR]
    coordinator reconcile

``COORD_URL`` and ``REQUESTER_ADDR`` provide defaults for ``--url`` and
``--requester``.
"""

import argparse
import json
import logging
import os
import posixpath
import shlex
import sys
from pathlib import Path

import httpx

from coordinator.cli.client import DEFAULT_TIMEOUT, DEFAULT_URL, CoordinatorAPIError, CoordinatorClient
from coordinator.config import DEFAULT_VERIFIER, CoordinatorConfig
from coordinator.escrow import EscrowNotConfiguredError, Web3EscrowClient
from coordinator.jobs import JobService, JobServiceError, SQLiteJobStorage, StorageError

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _require(value, message: str) -> str:
    if not value:
        raise ValueError(message)
    return value


def build_job_spec(args) -> dict:
    """Job specification payload from post-job arguments."""
    cmd = shlex.split(args.cmd)
    if not cmd:
        raise ValueError("--cmd cannot be empty")
    return {
        "image": args.image,
        "cmd": cmd,
        "resources": {
            "cpu": args.cpu,
            "ramGB": args.ram,
            "gpu": args.gpu,
            "storageGB": args.storage,
        },
        "inputs": [{"path": p} for p in args.input or []],
        "outputs": [{"path": p} for p in args.output or []],
        "maxPriceEth": args.price,
        "timeoutSec": args.timeout,
        "verifier": args.verifier,
    }


def build_result_payload(args) -> dict:
    """Result metadata payload from submit-result arguments."""
    artifacts = []
    if args.sha256:
        artifacts.append(
            {
                "path": args.path,
                "sha256": args.sha256,
                "size": args.size,
                "localUri": f"/outputs/{args.job}/{posixpath.basename(args.path)}",
            }
        )
    return {
        "jobId": args.job,
        "artifacts": artifacts,
        "stdoutTail": args.stdout_tail,
        "stderrTail": args.stderr_tail,
        "runtimeSec": args.runtime,
        "exitCode": args.exit_code,
    }


def cmd_post_job(args, client: CoordinatorClient):
    """Create a job."""
    requester = _require(
        args.requester, "Missing requester address. Pass --requester or set REQUESTER_ADDR"
    )
    _print_json(client.post_job(build_job_spec(args), requester))


def cmd_fund(args, client: CoordinatorClient):
    _print_json(client.fund(args.job, args.tx))


def cmd_match(args, client: CoordinatorClient):
    _print_json(client.match(args.job, args.provider))


def cmd_submit_result(args, client: CoordinatorClient):
    _print_json(client.submit_result(build_result_payload(args)))


def cmd_status(args, client: CoordinatorClient):
    _print_json(client.status(args.job))


def cmd_transitions(args, client: CoordinatorClient):
    _print_json(client.transitions(args.job))


def cmd_accept(args, client: CoordinatorClient):
    """Accept the result; blocks until the release confirms."""
    _print_json(client.accept(args.job, args.provider))


def cmd_cancel(args, client: CoordinatorClient):
    _print_json(client.cancel(args.job, args.requester))


def cmd_list(args, client: CoordinatorClient):
    jobs = client.list_jobs(status=args.status, provider_addr=args.provider, limit=args.limit)
    if args.json:
        _print_json(jobs)
        return
    if not jobs:
        print("No jobs found.")
        return
    for job in jobs:
        provider = job.get("providerAddr", "-")
        print(f"{job['jobId']}  {job['status']:<17} {job['priceCap']:>12}  {provider}")


def cmd_reconcile(args):
    """Repair half-finished settlements against the local store and ledger."""
    config = CoordinatorConfig.from_env()
    if args.db:
        config.db_path = Path(args.db)

    escrow = Web3EscrowClient.from_config(config)
    service = JobService(SQLiteJobStorage(config.db_path), escrow=escrow, config=config)
    report = service.reconcile()
    _print_json(report.to_dict())
    if report.unresolved or report.errors:
        sys.exit(2)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coordinator",
        description="Compute marketplace coordinator client",
    )
    parser.add_argument(
        "--url",
        default=os.environ.get("COORD_URL", DEFAULT_URL),
        help="Coordinator base URL (default: $COORD_URL or %(default)s)",
    )
    parser.add_argument("--http-timeout", type=float, default=DEFAULT_TIMEOUT,
                        help="Seconds to wait for a response")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # post-job
    p_post = subparsers.add_parser("post-job", help="Create a job")
    p_post.add_argument("--image", required=True, help="Container image")
    p_post.add_argument("--cmd", required=True, help="Command line, split shell-style")
    p_post.add_argument("--price", required=True, help="Maximum price in ETH, e.g. 0.01")
    p_post.add_argument("--requester", default=os.environ.get("REQUESTER_ADDR"),
                        help="Requester address (default: $REQUESTER_ADDR)")
    p_post.add_argument("--cpu", type=float, default=1)
    p_post.add_argument("--ram", type=float, default=1, help="RAM in GB")
    p_post.add_argument("--gpu", type=int, default=0)
    p_post.add_argument("--storage", type=float, default=1, help="Storage in GB")
    p_post.add_argument("--timeout", type=int, default=600, help="Job timeout in seconds")
    p_post.add_argument("--input", action="append", help="Input path (repeatable)")
    p_post.add_argument("--output", action="append", help="Output path (repeatable)")
    p_post.add_argument("--verifier", default=DEFAULT_VERIFIER)

    # fund
    p_fund = subparsers.add_parser("fund", help="Report the escrow deposit")
    p_fund.add_argument("--job", required=True)
    p_fund.add_argument("--tx", help="Funding transaction hash")

    # match
    p_match = subparsers.add_parser("match", help="Assign a provider")
    p_match.add_argument("--job", required=True)
    p_match.add_argument("--provider", required=True)

    # submit-result
    p_result = subparsers.add_parser("submit-result", help="Submit result metadata (manual)")
    p_result.add_argument("--job", required=True)
    p_result.add_argument("--sha256", help="Artifact hash; omit to report no artifacts")
    p_result.add_argument("--path", default="/out/hello.txt", help="Artifact path")
    p_result.add_argument("--size", type=int, default=0, help="Artifact size in bytes")
    p_result.add_argument("--runtime", type=float, default=0, help="Runtime in seconds")
    p_result.add_argument("--exit-code", type=int, default=0)
    p_result.add_argument("--stdout-tail", default="")
    p_result.add_argument("--stderr-tail", default="")

    # status
    p_status = subparsers.add_parser("status", help="Show job status")
    p_status.add_argument("--job", required=True)

    # transitions
    p_trans = subparsers.add_parser("transitions", help="Show a job's status history")
    p_trans.add_argument("--job", required=True)

    # accept
    p_accept = subparsers.add_parser("accept", help="Accept result and release payment")
    p_accept.add_argument("--job", required=True)
    p_accept.add_argument("--provider", help="Expected provider address")

    # cancel
    p_cancel = subparsers.add_parser("cancel", help="Cancel job and refund")
    p_cancel.add_argument("--job", required=True)
    p_cancel.add_argument("--requester", default=os.environ.get("REQUESTER_ADDR"))

    # list
    p_list = subparsers.add_parser("list", help="List jobs")
    p_list.add_argument("--status", help="Filter by status, e.g. MATCHED")
    p_list.add_argument("--provider", help="Filter by assigned provider")
    p_list.add_argument("--limit", type=int)
    p_list.add_argument("--json", "-j", action="store_true")

    # reconcile
    p_reconcile = subparsers.add_parser(
        "reconcile", help="Repair half-finished settlements from ledger state"
    )
    p_reconcile.add_argument("--db", help="Job store path (default: $COORDINATOR_DB)")

    return parser


HTTP_COMMANDS = {
    "post-job": cmd_post_job,
    "fund": cmd_fund,
    "match": cmd_match,
    "submit-result": cmd_submit_result,
    "status": cmd_status,
    "transitions": cmd_transitions,
    "accept": cmd_accept,
    "cancel": cmd_cancel,
    "list": cmd_list,
}


def main(argv=None, transport=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.command == "reconcile":
            cmd_reconcile(args)
            return
        with CoordinatorClient(args.url, timeout=args.http_timeout, transport=transport) as client:
            HTTP_COMMANDS[args.command](args, client)
    except CoordinatorAPIError as e:
        logger.error(f"Request failed: {e}")
        if isinstance(e.body, dict):
            _print_json(e.body)
        sys.exit(1)
    except httpx.HTTPError as e:
        logger.error(f"Cannot reach coordinator at {args.url}: {e}")
        sys.exit(1)
    except EscrowNotConfiguredError as e:
        logger.error(f"Escrow not configured: {e}")
        sys.exit(1)
    except (JobServiceError, StorageError) as e:
        logger.error(f"Reconcile failed: {e}")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
