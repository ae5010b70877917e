# Control-plane clients used by lpar_cleanup.
# Each client exposes the same small set of instance/volume operations so the
# cleanup stages do not care whether they talk to PowerVS or EC2.

import enum
import json
import logging
import subprocess
from dataclasses import dataclass

import boto3
import botocore # For ClientError and credential errors

logger = logging.getLogger("LparCleanup.clients")


class ResourceApiError(Exception):
    """A control-plane call failed in a way that cannot be downgraded."""


class PowerState(enum.Enum):
    ACTIVE = "ACTIVE"
    SHUTOFF = "SHUTOFF"
    UNKNOWN = "UNKNOWN" # Transient or unrecognised states

    @classmethod
    def from_status(cls, status, mapping=None):
        """Map a raw provider status string onto a PowerState."""
        if not isinstance(status, str):
            return cls.UNKNOWN
        if mapping is not None:
            return mapping.get(status.lower(), cls.UNKNOWN)
        try:
            return cls(status.upper())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Volume:
    volume_id: str
    name: str = ""
    boot: bool = False


class ResourceClient:
    """Operations the cleanup run needs from a compute/storage control plane.

    Query methods that have a safe default (volume listing, existence checks)
    never raise; command methods return True when the request was accepted.
    """

    def find_instance_by_name(self, name):
        raise NotImplementedError

    def get_instance_status(self, instance_id):
        raise NotImplementedError

    def list_attached_volumes(self, instance_id):
        raise NotImplementedError

    def request_shutdown(self, instance_id):
        raise NotImplementedError

    def bulk_detach_volumes(self, instance_id):
        raise NotImplementedError

    def detach_volume(self, instance_id, volume_id):
        raise NotImplementedError

    def delete_volume(self, volume_id):
        raise NotImplementedError

    def volume_exists(self, volume_id):
        raise NotImplementedError

    def delete_instance(self, instance_id):
        raise NotImplementedError

    def instance_exists(self, instance_id):
        raise NotImplementedError


# --- IBM Power Virtual Server, through the ibmcloud CLI ---

class PowerVSClient(ResourceClient):
    def __init__(self, cli="ibmcloud", timeout=300):
        self.cli = cli
        self.timeout = timeout

    def _run(self, *args, secret=False):
        """Run an ibmcloud subcommand. Returns (rc, stdout, stderr)."""
        cmd = [self.cli] + list(args)
        logger.debug(f"Running: {self.cli} {args[0] if secret else ' '.join(args)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            return 127, "", f"'{self.cli}' executable not found"
        except subprocess.TimeoutExpired:
            return 124, "", f"'{self.cli} {args[0]}' timed out after {self.timeout}s"
        return proc.returncode, proc.stdout.strip(), proc.stderr.strip()

    def _run_json(self, *args):
        rc, out, err = self._run(*args)
        if rc != 0:
            raise ResourceApiError(f"'{self.cli} {' '.join(args)}' failed (rc={rc}): {err or out}")
        try:
            return json.loads(out or "{}")
        except ValueError as e:
            raise ResourceApiError(f"'{self.cli} {' '.join(args)}' returned invalid JSON: {e}") from e

    def _ok(self, *args):
        rc, out, err = self._run(*args)
        if rc != 0:
            logger.warning(f"'{self.cli} {' '.join(args)}' failed (rc={rc}): {err or out}")
            return False
        return True

    def login(self, api_key, region, resource_group, workspace_crn):
        """Authenticate and target the resource group and PowerVS workspace."""
        if not api_key:
            raise ResourceApiError("No IBM Cloud API key provided (set IBMCLOUD_API_KEY or pass --api-key).")
        if not workspace_crn:
            raise ResourceApiError("No PowerVS workspace CRN provided (set PVS_CRN or pass --workspace-crn).")

        logger.info(f"Authenticating to IBM Cloud (Region: {region})...")
        rc, out, err = self._run("login", "--apikey", api_key, "-r", region, secret=True)
        if rc != 0:
            raise ResourceApiError(f"IBM Cloud login failed (rc={rc}): {err or out}")
        logger.info("Authentication successful")

        logger.info(f"Targeting resource group: {resource_group}...")
        rc, out, err = self._run("target", "-g", resource_group)
        if rc != 0:
            raise ResourceApiError(f"Failed to target resource group '{resource_group}': {err or out}")

        logger.info("Targeting PowerVS workspace...")
        rc, out, err = self._run("pi", "workspace", "target", workspace_crn)
        if rc != 0:
            raise ResourceApiError(f"Failed to target PowerVS workspace: {err or out}")
        logger.info("PowerVS workspace targeted")

    def find_instance_by_name(self, name):
        data = self._run_json("pi", "instance", "list", "--json")
        for instance in data.get("pvmInstances") or []:
            if instance.get("name") == name and instance.get("id"):
                return instance["id"]
        return None

    def get_instance_status(self, instance_id):
        data = self._run_json("pi", "instance", "get", instance_id, "--json")
        return PowerState.from_status(data.get("status"))

    def list_attached_volumes(self, instance_id):
        try:
            data = self._run_json("pi", "instance", "volume", "list", instance_id, "--json")
        except ResourceApiError as e:
            logger.warning(f"Could not list volumes for {instance_id}, treating as none attached: {e}")
            return []
        volumes = []
        for vol in data.get("volumes") or []:
            if not vol.get("volumeID"):
                continue
            volumes.append(Volume(vol["volumeID"], vol.get("name", ""), vol.get("bootVolume") is True))
        return volumes

    def request_shutdown(self, instance_id):
        return self._ok("pi", "instance", "action", instance_id, "--operation", "immediate-shutdown")

    def bulk_detach_volumes(self, instance_id):
        return self._ok("pi", "instance", "volume", "bulk-detach", instance_id,
                        "--detach-all", "--detach-primary")

    def detach_volume(self, instance_id, volume_id):
        return self._ok("pi", "instance", "volume", "detach", instance_id, volume_id)

    def delete_volume(self, volume_id):
        return self._ok("pi", "volume", "delete", volume_id)

    def volume_exists(self, volume_id):
        # The CLI gives no structured error code; any failed lookup counts as gone.
        rc, _, _ = self._run("pi", "volume", "get", volume_id)
        return rc == 0

    def delete_instance(self, instance_id):
        return self._ok("pi", "instance", "delete", instance_id)

    def instance_exists(self, instance_id):
        rc, _, _ = self._run("pi", "instance", "get", instance_id)
        return rc == 0


# --- AWS EC2, through boto3 ---

EC2_POWER_STATES = {
    "running": PowerState.ACTIVE,
    "stopped": PowerState.SHUTOFF,
}
EC2_LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped", "shutting-down"]


# Service errors and transport failures (timeouts, unreachable endpoints).
AWS_ERRORS = (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError)


def _error_code(e):
    # BotoCoreError carries no service response.
    return getattr(e, "response", {}).get("Error", {}).get("Code", "Unknown")


def create_ec2_client(region, profile=None, role_arn=None, role_session_name="LparCleanupSession"):
    """Build an EC2 client from a profile, an assumed role or the default chain."""
    session_params = {"region_name": region}
    try:
        if role_arn:
            logger.info(f"Attempting to assume role: {role_arn} with session name: {role_session_name}")
            if profile:
                logger.debug(f"Using profile '{profile}' to create STS client for assuming role '{role_arn}'.")
                sts_client = boto3.Session(profile_name=profile, region_name=region).client('sts')
            else:
                sts_client = boto3.client('sts', region_name=region)
            credentials = sts_client.assume_role(RoleArn=role_arn, RoleSessionName=role_session_name)['Credentials']
            session_params.update({
                'aws_access_key_id': credentials['AccessKeyId'],
                'aws_secret_access_key': credentials['SecretAccessKey'],
                'aws_session_token': credentials['SessionToken'],
            })
            logger.info(f"Successfully assumed role '{role_arn}'.")
        elif profile:
            session_params["profile_name"] = profile
            logger.info(f"Using AWS CLI profile: '{profile}' for the session.")
        else:
            logger.info("Using default AWS SDK credential chain for the session.")

        session = boto3.Session(**session_params)
        identity = session.client('sts').get_caller_identity()
        logger.info(f"Running as: {identity['Arn']} in Account: {identity['Account']}")
        return session.client("ec2")
    except botocore.exceptions.NoCredentialsError as e:
        raise ResourceApiError("No AWS credentials found. Configure env vars, shared credentials, SSO or an instance profile.") from e
    except botocore.exceptions.ProfileNotFound as e:
        raise ResourceApiError(f"AWS profile '{profile}' not found: {e}") from e
    except botocore.exceptions.NoRegionError as e:
        raise ResourceApiError(f"No AWS region configured: {e}. Pass --region or set AWS_REGION.") from e
    except botocore.exceptions.ClientError as e:
        raise ResourceApiError(f"AWS session setup failed: {_error_code(e)} - {e}") from e
    except botocore.exceptions.BotoCoreError as e:
        raise ResourceApiError(f"AWS session setup failed: {e}") from e


class EC2Client(ResourceClient):
    """EC2 instances are addressed by their Name tag; the root device is the boot volume."""

    def __init__(self, ec2_client):
        self.ec2 = ec2_client

    def _describe_instance(self, instance_id):
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except botocore.exceptions.ClientError as e:
            if _error_code(e) == "InvalidInstanceID.NotFound":
                return None
            raise
        for reservation in response.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                return instance
        return None

    def _command(self, description, func, **kwargs):
        try:
            func(**kwargs)
            return True
        except AWS_ERRORS as e:
            logger.warning(f"{description} failed: {_error_code(e)} - {e}")
            return False

    def find_instance_by_name(self, name):
        filters = [
            {'Name': 'tag:Name', 'Values': [name]},
            {'Name': 'instance-state-name', 'Values': EC2_LIVE_INSTANCE_STATES},
        ]
        try:
            for page in self.ec2.get_paginator('describe_instances').paginate(Filters=filters):
                for reservation in page.get('Reservations', []):
                    for instance in reservation.get('Instances', []):
                        return instance['InstanceId']
        except AWS_ERRORS as e:
            raise ResourceApiError(f"Failed to look up instance '{name}': {_error_code(e)} - {e}") from e
        return None

    def get_instance_status(self, instance_id):
        try:
            instance = self._describe_instance(instance_id)
        except AWS_ERRORS as e:
            raise ResourceApiError(f"Failed to describe instance {instance_id}: {e}") from e
        if instance is None or instance['State']['Name'] == 'terminated':
            raise ResourceApiError(f"Instance {instance_id} not found.")
        return PowerState.from_status(instance['State']['Name'], EC2_POWER_STATES)

    def list_attached_volumes(self, instance_id):
        try:
            instance = self._describe_instance(instance_id)
            root_device = instance.get('RootDeviceName') if instance else None
            volumes = []
            paginator = self.ec2.get_paginator('describe_volumes')
            for page in paginator.paginate(Filters=[{'Name': 'attachment.instance-id', 'Values': [instance_id]}]):
                for vol in page.get('Volumes', []):
                    device = next((a.get('Device') for a in vol.get('Attachments', [])
                                   if a.get('InstanceId') == instance_id), None)
                    tags = {t['Key']: t['Value'] for t in vol.get('Tags', [])}
                    volumes.append(Volume(vol['VolumeId'], tags.get('Name', ''),
                                          root_device is not None and device == root_device))
            return volumes
        except AWS_ERRORS as e:
            logger.warning(f"Could not list volumes for {instance_id}, treating as none attached: {e}")
            return []

    def request_shutdown(self, instance_id):
        return self._command(f"Stop of {instance_id}", self.ec2.stop_instances,
                             InstanceIds=[instance_id], Force=True)

    def bulk_detach_volumes(self, instance_id):
        accepted = True
        for volume in self.list_attached_volumes(instance_id):
            if not self.detach_volume(instance_id, volume.volume_id):
                accepted = False
        return accepted

    def detach_volume(self, instance_id, volume_id):
        return self._command(f"Detach of {volume_id} from {instance_id}", self.ec2.detach_volume,
                             InstanceId=instance_id, VolumeId=volume_id, Force=True)

    def delete_volume(self, volume_id):
        return self._command(f"Delete of {volume_id}", self.ec2.delete_volume, VolumeId=volume_id)

    def volume_exists(self, volume_id):
        try:
            vols = self.ec2.describe_volumes(VolumeIds=[volume_id]).get('Volumes', [])
        except AWS_ERRORS as e:
            if _error_code(e) == "InvalidVolume.NotFound":
                return False
            logger.warning(f"Could not check volume {volume_id}, assuming it still exists: {e}")
            return True
        return any(v.get('State') != 'deleted' for v in vols)

    def delete_instance(self, instance_id):
        return self._command(f"Termination of {instance_id}", self.ec2.terminate_instances,
                             InstanceIds=[instance_id])

    def instance_exists(self, instance_id):
        try:
            instance = self._describe_instance(instance_id)
        except AWS_ERRORS as e:
            logger.warning(f"Could not check instance {instance_id}, assuming it still exists: {e}")
            return True
        return instance is not None and instance['State']['Name'] != 'terminated'
