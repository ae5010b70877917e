# Tears down the secondary LPAR used by a backup cycle: shuts it down, detaches
# and deletes its volumes, and optionally deletes the LPAR itself, leaving the
# environment clean for the next cycle. Safe to re-run against a partially
# cleaned or already removed environment.

import argparse
import enum
import logging # Import logging module
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime

import resource_clients
from resource_clients import PowerState, ResourceApiError

# Global logger instance
logger = logging.getLogger("LparCleanup")

DEFAULT_POWERVS_REGION = "us-south"
DETACH_SETTLE_SECONDS = 30 # Bulk detach is asynchronous on the backend
INDIVIDUAL_DETACH_AFTER_SECONDS = 60
INSTANCE_DELETE_SETTLE_SECONDS = 60

RETAINED_BY_PREFERENCE = "Retained by preference"
ALREADY_DELETED = "Already deleted or not found"
DELETION_COMMAND_FAILED = "Deletion command failed"
DELETED_SUCCESSFULLY = "Deleted successfully"
DELETION_TIMEOUT = "Deletion timeout - may still be processing"
DRY_RUN_SKIPPED = "Dry run - deletion skipped"

TOTAL_STAGES = 5


class CleanupAborted(Exception):
    """A stage failed in a way that makes continuing unsafe."""


class PollOutcome(enum.Enum):
    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"


class RetryState(enum.Enum):
    NOT_ATTEMPTED = "not_attempted"
    ATTEMPTED = "attempted"


@dataclass(frozen=True)
class CleanupConfig:
    poll_interval: int = 30
    max_shutdown_wait: int = 600
    max_detach_wait: int = 360
    max_delete_wait: int = 120
    max_instance_delete_wait: int = 600
    delete_instance_on_completion: bool = False
    dry_run: bool = False


@dataclass
class VolumeSet:
    boot: object = None
    data: list = field(default_factory=list)

    def in_teardown_order(self):
        """Boot volume first, then data volumes in discovery order."""
        return ([self.boot] if self.boot else []) + list(self.data)


@dataclass
class CleanupRun:
    instance_name: str
    instance_id: str = None
    volumes: VolumeSet = field(default_factory=VolumeSet)
    found: bool = False
    instance_disposition: str = "Not requested"
    warnings: list = field(default_factory=list)

    def warn(self, message):
        logger.warning(message)
        self.warnings.append(message)


# --- Configuration and command line ---

CONFIG_ENV_VARS = {
    "poll_interval": "POLL_INTERVAL",
    "max_shutdown_wait": "MAX_SHUTDOWN_WAIT",
    "max_detach_wait": "MAX_DETACH_WAIT",
    "max_delete_wait": "MAX_DELETE_WAIT",
    "max_instance_delete_wait": "MAX_LPAR_DELETE_WAIT",
}
TRUE_VALUES = {"yes", "y", "true", "1"}
FALSE_VALUES = {"no", "n", "false", "0", ""}


def parse_yes_no(value):
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ValueError(f"Expected Yes or No, got '{value}'")


def build_config(args, environ):
    """Resolve each setting from its flag, then its environment variable, then the default."""
    defaults = CleanupConfig()
    settings = {}
    for name, env_var in CONFIG_ENV_VARS.items():
        value = getattr(args, name)
        if value is None and environ.get(env_var):
            try:
                value = int(environ[env_var])
            except ValueError:
                raise ValueError(f"{env_var} must be an integer number of seconds, got '{environ[env_var]}'")
        if value is None:
            value = getattr(defaults, name)
        if value < 0 or (name == "poll_interval" and value == 0):
            raise ValueError(f"{name.replace('_', '-')} must be positive, got {value}")
        settings[name] = value

    delete_instance = args.delete_lpar
    if delete_instance is None:
        delete_instance = parse_yes_no(environ.get("EXECUTE_LPAR_DELETE", "No"))

    return CleanupConfig(delete_instance_on_completion=delete_instance, dry_run=args.dry_run, **settings)


def build_parser():
    parser = argparse.ArgumentParser(
        description="""Cleans up the secondary LPAR after a backup cycle: shuts it down, detaches and
deletes its boot and data volumes, and optionally deletes the LPAR itself.""",
        epilog="""Examples:
  python lpar_cleanup.py --lpar-name empty-ibmi-lpar --workspace-crn crn:v1:...
  python lpar_cleanup.py --lpar-name empty-ibmi-lpar --delete-lpar --dry-run
  python lpar_cleanup.py --lpar-name backup-host --provider ec2 --region us-east-1 --profile backup

Environment: IBMCLOUD_API_KEY, PVS_CRN, EXECUTE_LPAR_DELETE=Yes|No, POLL_INTERVAL,
MAX_SHUTDOWN_WAIT, MAX_DETACH_WAIT, MAX_DELETE_WAIT, MAX_LPAR_DELETE_WAIT.
Logs are stored in files named like 'lpar_cleanup_<lpar_name>_<timestamp>.log' in the current directory.
""",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--lpar-name", required=True,
                        help="Name of the LPAR (instance) to clean up.")
    parser.add_argument("--provider", choices=["powervs", "ec2"], default="powervs",
                        help="Control plane hosting the LPAR. Default: '%(default)s'.")
    parser.add_argument("--region",
                        help=f"Region of the workspace. Default for powervs: '{DEFAULT_POWERVS_REGION}'; "
                             "for ec2 the SDK's configured region.")
    parser.add_argument("--dry-run", action="store_true",
                        help="Resolve and report the inventory without shutting down, detaching or deleting anything.")

    delete_group = parser.add_mutually_exclusive_group()
    delete_group.add_argument("--delete-lpar", dest="delete_lpar", action="store_true", default=None,
                              help="Delete the LPAR itself after its volumes are removed (overrides EXECUTE_LPAR_DELETE).")
    delete_group.add_argument("--keep-lpar", dest="delete_lpar", action="store_false", default=None,
                              help="Retain the LPAR after its volumes are removed (overrides EXECUTE_LPAR_DELETE).")

    wait_group = parser.add_argument_group('polling options (seconds)')
    wait_group.add_argument("--poll-interval", type=int, help="Seconds between status checks. Default: 30.")
    wait_group.add_argument("--max-shutdown-wait", type=int, help="Limit for reaching SHUTOFF. Default: 600.")
    wait_group.add_argument("--max-detach-wait", type=int, help="Limit for volume detachment. Default: 360.")
    wait_group.add_argument("--max-delete-wait", type=int, help="Limit for each volume deletion. Default: 120.")
    wait_group.add_argument("--max-lpar-delete-wait", dest="max_instance_delete_wait", type=int,
                            help="Limit for LPAR deletion. Default: 600.")

    pvs_group = parser.add_argument_group('powervs options')
    pvs_group.add_argument("--api-key", default=os.environ.get("IBMCLOUD_API_KEY"),
                           help="IBM Cloud API key. Default: $IBMCLOUD_API_KEY.")
    pvs_group.add_argument("--resource-group", default="Default",
                           help="Resource group to target. Default: '%(default)s'.")
    pvs_group.add_argument("--workspace-crn", default=os.environ.get("PVS_CRN"),
                           help="CRN of the PowerVS workspace. Default: $PVS_CRN.")

    aws_group = parser.add_argument_group('ec2 options')
    aws_group.add_argument("--profile",
                           help="The AWS CLI profile to use. If not specified, default SDK credential chain is used.")
    aws_group.add_argument("--role-arn",
                           help="ARN of an IAM role to assume for EC2 operations.")
    aws_group.add_argument("--role-session-name", default="LparCleanupSession",
                           help="An identifier for the assumed role session. Default: '%(default)s'.")

    return parser


def parse_arguments(argv):
    return build_parser().parse_args(argv)


def setup_logging(lpar_name_for_log, is_dry_run=False):
    """Configures logging for console and file."""
    logger.setLevel(logging.DEBUG)

    # Clear existing handlers (if any, e.g., during re-runs in a session)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    formatter_str = '%(asctime)s - %(levelname)s - %(message)s'
    if is_dry_run:
        formatter_str = '[DRY RUN] ' + formatter_str
    ch.setFormatter(logging.Formatter(formatter_str))
    logger.addHandler(ch)

    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    dry_run_suffix = "_DRYRUN" if is_dry_run else ""
    log_file_name = f"lpar_cleanup_{lpar_name_for_log}_{timestamp}{dry_run_suffix}.log"
    try:
        fh = logging.FileHandler(log_file_name)
        fh.setLevel(logging.DEBUG)
        file_formatter_str = '%(asctime)s - %(levelname)s - [%(module)s.%(funcName)s:%(lineno)d] - %(message)s'
        if is_dry_run:
            file_formatter_str = '[DRY RUN] ' + file_formatter_str
        fh.setFormatter(logging.Formatter(file_formatter_str))
        logger.addHandler(fh)
        logger.info(f"Detailed logging to file: {log_file_name}")
    except Exception as e:
        logger.error(f"Failed to set up file handler for {log_file_name}: {e}")


def log_stage(number, title):
    logger.info("=" * 72)
    logger.info(f" STAGE {number}/{TOTAL_STAGES}: {title}")
    logger.info("=" * 72)


# --- Bounded polling ---

def poll(predicate, interval, max_wait, description, on_pending=None):
    """Re-evaluate ``predicate`` every ``interval`` seconds until it holds.

    ``elapsed`` counts completed intervals, not wall-clock time. The predicate
    is checked before the first sleep and once more when ``elapsed`` reaches
    ``max_wait``; only then is TIMED_OUT returned. ``on_pending(elapsed)`` runs
    after every unsatisfied check.
    """
    elapsed = 0
    while True:
        if predicate():
            return PollOutcome.SATISFIED
        if on_pending is not None:
            on_pending(elapsed)
        if elapsed >= max_wait:
            logger.debug(f"Gave up waiting after {elapsed}s: {description}")
            return PollOutcome.TIMED_OUT
        logger.info(f"  {description} - waiting {interval}s... ({elapsed}s of {max_wait}s)")
        time.sleep(interval)
        elapsed += interval


# --- Stage 1: inventory ---

def classify_volumes(volumes):
    volume_set = VolumeSet()
    for volume in volumes:
        if volume.boot and volume_set.boot is None:
            volume_set.boot = volume
            continue
        if volume.boot:
            logger.warning(f"More than one boot volume reported; treating {volume.volume_id} as a data volume.")
        volume_set.data.append(volume)
    return volume_set


def resolve_inventory(client, run):
    """Resolve the instance and its attached volumes. Returns False if the instance does not exist."""
    logger.info(f"Resolving LPAR '{run.instance_name}'...")
    instance_id = client.find_instance_by_name(run.instance_name)
    if not instance_id:
        logger.warning(f"LPAR not found: {run.instance_name}. No cleanup needed - LPAR does not exist.")
        return False

    run.found = True
    run.instance_id = instance_id
    logger.info(f"LPAR found. Name: {run.instance_name}, Instance ID: {instance_id}")

    logger.info("Querying attached volumes...")
    run.volumes = classify_volumes(client.list_attached_volumes(instance_id))
    if run.volumes.boot is None:
        logger.warning("No boot volume found. LPAR has no volumes attached - limited cleanup available.")
    else:
        data_ids = ", ".join(v.volume_id for v in run.volumes.data) or "None"
        logger.info(f"Volumes identified. Boot volume: {run.volumes.boot.volume_id}, Data volumes: {data_ids}")
    return True


# --- Stage 2: shutdown ---

def _status_or_unknown(client, instance_id):
    try:
        return client.get_instance_status(instance_id)
    except ResourceApiError as e:
        logger.warning(f"Status check failed, will retry: {e}")
        return PowerState.UNKNOWN


def shutdown_instance(client, run, config):
    if run.volumes.boot is None:
        logger.info("Skipping shutdown - LPAR has no volumes (cannot be active).")
        return

    logger.info("Checking LPAR status...")
    try:
        status = client.get_instance_status(run.instance_id)
    except ResourceApiError as e:
        raise CleanupAborted(f"Could not determine LPAR status before shutdown: {e}") from e
    logger.info(f"  Current status: {status.value}")

    if status is not PowerState.ACTIVE:
        logger.info("LPAR is not ACTIVE - shutdown not needed.")
        return

    if config.dry_run:
        logger.info(f"[DRY RUN] Would issue immediate shutdown for {run.instance_id} and wait for SHUTOFF.")
        return

    logger.info("Initiating immediate shutdown...")
    if not client.request_shutdown(run.instance_id):
        raise CleanupAborted("Immediate shutdown failed.")
    logger.info("Shutdown command accepted.")

    logger.info(f"Waiting for LPAR to reach SHUTOFF state (max: {config.max_shutdown_wait}s)...")
    outcome = poll(lambda: _status_or_unknown(client, run.instance_id) is PowerState.SHUTOFF,
                   config.poll_interval, config.max_shutdown_wait, "LPAR not yet SHUTOFF")
    if outcome is PollOutcome.TIMED_OUT:
        raise CleanupAborted(f"LPAR failed to shut down within {config.max_shutdown_wait}s.")
    logger.info("LPAR is SHUTOFF.")


# --- Stage 3: detach ---

class IndividualDetachFallback:
    """Per-volume detach issued at most once when the bulk request was rejected."""

    def __init__(self, client, instance_id, volumes, bulk_rejected):
        self.client = client
        self.instance_id = instance_id
        self.volumes = volumes
        self.bulk_rejected = bulk_rejected
        self.state = RetryState.NOT_ATTEMPTED

    def should_fire(self, elapsed):
        return (self.bulk_rejected
                and self.state is RetryState.NOT_ATTEMPTED
                and elapsed >= INDIVIDUAL_DETACH_AFTER_SECONDS)

    def __call__(self, elapsed):
        if not self.should_fire(elapsed):
            return
        self.state = RetryState.ATTEMPTED
        logger.info("Initial bulk detach failed - attempting individual volume detachment...")
        for volume in self.volumes.in_teardown_order():
            role = "boot" if volume is self.volumes.boot else "data"
            logger.info(f"  Detaching {role} volume: {volume.volume_id}...")
            if not self.client.detach_volume(self.instance_id, volume.volume_id):
                logger.warning(f"  {role.capitalize()} volume {volume.volume_id} detach failed.")
        logger.info("  Retry detach commands issued - continuing wait...")


def detach_volumes(client, run, config):
    if run.volumes.boot is None:
        logger.info("Skipping detach - no volumes attached.")
        return

    if config.dry_run:
        ids = ", ".join(v.volume_id for v in run.volumes.in_teardown_order())
        logger.info(f"[DRY RUN] Would bulk-detach volumes from {run.instance_id}: {ids}")
        return

    logger.info("Requesting bulk detach of all volumes...")
    accepted = client.bulk_detach_volumes(run.instance_id)
    if accepted:
        logger.info("Detach request submitted.")
    else:
        run.warn("Bulk detach command failed. Will retry individual volume detachment if needed.")

    logger.info(f"Waiting for volumes to detach (max: {config.max_detach_wait}s)...")
    time.sleep(DETACH_SETTLE_SECONDS)

    fallback = IndividualDetachFallback(client, run.instance_id, run.volumes, bulk_rejected=not accepted)
    outcome = poll(lambda: not client.list_attached_volumes(run.instance_id),
                   config.poll_interval, config.max_detach_wait, "Volumes still attached",
                   on_pending=fallback)
    if outcome is PollOutcome.SATISFIED:
        logger.info("All volumes detached successfully.")
    else:
        run.warn(f"Volumes still attached after {config.max_detach_wait}s. "
                 "Proceeding with deletion - volumes will be force-deleted.")


# --- Stage 4: delete volumes ---

def _delete_and_verify(client, run, config, volume, role):
    if config.dry_run:
        logger.info(f"[DRY RUN] Would delete {role} volume {volume.volume_id} and verify its removal.")
        return
    logger.info(f"Deleting {role} volume: {volume.volume_id}...")
    if not client.delete_volume(volume.volume_id):
        run.warn(f"{role.capitalize()} volume {volume.volume_id} deletion command failed.")

    outcome = poll(lambda: not client.volume_exists(volume.volume_id),
                   config.poll_interval, config.max_delete_wait, f"Volume {volume.volume_id} still exists")
    if outcome is PollOutcome.SATISFIED:
        logger.info(f"{role.capitalize()} volume {volume.volume_id} deleted successfully.")
    else:
        run.warn(f"{role.capitalize()} volume {volume.volume_id} still exists after {config.max_delete_wait}s.")


def delete_volumes(client, run, config):
    if run.volumes.boot is None:
        logger.info("Skipping deletion - no volumes to delete.")
        return

    _delete_and_verify(client, run, config, run.volumes.boot, "boot")
    for volume in run.volumes.data:
        _delete_and_verify(client, run, config, volume, "data")


# --- Stage 5: delete instance ---

def delete_instance(client, run, config):
    logger.info(f"User preference: delete LPAR = {'Yes' if config.delete_instance_on_completion else 'No'}")
    if not config.delete_instance_on_completion:
        logger.info("LPAR will be retained.")
        run.instance_disposition = RETAINED_BY_PREFERENCE
        return

    if not run.instance_id:
        logger.info("LPAR not found - already deleted.")
        run.instance_disposition = ALREADY_DELETED
        return

    if config.dry_run:
        logger.info(f"[DRY RUN] Would delete LPAR {run.instance_name} ({run.instance_id}) and verify its removal.")
        run.instance_disposition = DRY_RUN_SKIPPED
        return

    logger.info(f"Deleting LPAR: {run.instance_name} (Instance ID: {run.instance_id})...")
    if not client.delete_instance(run.instance_id):
        run.instance_disposition = DELETION_COMMAND_FAILED
        raise CleanupAborted("LPAR deletion command failed.")
    logger.info("Deletion command accepted.")

    logger.info("Waiting for deletion to initiate...")
    time.sleep(INSTANCE_DELETE_SETTLE_SECONDS)

    logger.info("Verifying LPAR deletion...")
    outcome = poll(lambda: not client.instance_exists(run.instance_id),
                   config.poll_interval, config.max_instance_delete_wait, "LPAR still exists")
    if outcome is PollOutcome.SATISFIED:
        logger.info("LPAR deleted successfully.")
        run.instance_disposition = DELETED_SUCCESSFULLY
    else:
        run.warn(f"LPAR deletion not confirmed after {config.max_instance_delete_wait}s.")
        run.instance_disposition = DELETION_TIMEOUT


# --- Orchestration and report ---

def run_cleanup(client, instance_name, config):
    """Drive every stage in order. Raises CleanupAborted on a fatal stage failure."""
    run = CleanupRun(instance_name)

    log_stage(1, "RESOLVE LPAR & IDENTIFY ATTACHED VOLUMES")
    if not resolve_inventory(client, run):
        return run

    log_stage(2, "SHUTDOWN LPAR")
    shutdown_instance(client, run, config)

    log_stage(3, "DETACH VOLUMES")
    detach_volumes(client, run, config)

    log_stage(4, "DELETE VOLUMES")
    delete_volumes(client, run, config)

    log_stage(5, "LPAR DELETION (OPTIONAL)")
    delete_instance(client, run, config)
    return run


def format_summary(run, dry_run=False):
    rule = "  " + "-" * 64
    lines = [
        "=" * 72,
        " CLEANUP COMPLETION SUMMARY",
        "=" * 72,
        f"  {'Status:':<29}✓ {'DRY RUN' if dry_run else 'SUCCESS'}",
        rule,
        f"  {'LPAR:':<29}{run.instance_name}",
    ]
    if not run.found:
        lines += [f"  {'LPAR Status:':<29}Not found - no cleanup needed", rule]
        return lines

    stage_result = "Skipped (dry run)" if dry_run else "✓ Complete"
    lines += [
        f"  {'LPAR Shutdown:':<29}{stage_result}",
        f"  {'Volumes Detached:':<29}{stage_result}",
        f"  {'Volumes Deleted:':<29}{stage_result}",
        f"  {'LPAR Deletion:':<29}{run.instance_disposition}",
        f"  {'Warnings:':<29}{len(run.warnings)}",
    ]
    lines += [f"    - {w}" for w in run.warnings]
    if dry_run:
        lines += [rule, "  No changes were made", "=" * 72]
    else:
        lines += [rule, "  Environment returned to clean state", "  Ready for next backup cycle", "=" * 72]
    return lines


def print_summary(run, dry_run=False):
    print("\n" + "\n".join(format_summary(run, dry_run)) + "\n") # Print for direct visibility


def connect_client(args):
    """Authenticate against the selected control plane and return a ResourceClient."""
    if args.provider == "ec2":
        ec2 = resource_clients.create_ec2_client(args.region, args.profile, args.role_arn, args.role_session_name)
        return resource_clients.EC2Client(ec2)
    client = resource_clients.PowerVSClient()
    client.login(args.api_key, args.region or DEFAULT_POWERVS_REGION, args.resource_group, args.workspace_crn)
    return client


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    try:
        config = build_config(args, os.environ)
    except ValueError as e:
        parser.error(str(e)) # Exits 2 with the usage line

    setup_logging(args.lpar_name, config.dry_run)
    logger.info(f"Cleanup starting for LPAR '{args.lpar_name}' on {args.provider}. Dry run: {config.dry_run}")
    logger.debug(f"Configuration: {config}")

    try:
        client = connect_client(args)
        run = run_cleanup(client, args.lpar_name, config)
    except CleanupAborted as e:
        logger.error(f"✗ ERROR: {e}")
        logger.info(f"Cleanup for LPAR '{args.lpar_name}' failed.")
        return 1
    except ResourceApiError as e:
        logger.error(f"✗ ERROR: {e}")
        logger.info(f"Cleanup for LPAR '{args.lpar_name}' failed.")
        return 1
    except Exception as e:
        logger.error(f"✗ ERROR: An unexpected error occurred: {e}", exc_info=True)
        logger.info(f"Cleanup for LPAR '{args.lpar_name}' failed.")
        return 1

    print_summary(run, config.dry_run)
    logger.info(f"Cleanup for LPAR '{args.lpar_name}' completed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
