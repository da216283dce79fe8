"""Operator-facing run status: login notice and cloud status tags."""

import os
from pathlib import Path
from typing import Protocol

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

from .config import Settings
from .errors import SettingsError
from .types import StatusName
from .utils import log, warn

SAKURA_API_URL = "https://secure.sakura.ad.jp/cloud/zone/{zone}/api/cloud/1.1/server/{server_id}"
AWS_STATUS_TAG = "provisionvm-status"

MOTD_TEMPLATES = {
    "running": "\n#-- Provisioning is \033[0;32mrunning\033[0;39m. --#\n\nPlease check the log file: {log_file}\n",
    "failed": "\n#-- Provisioning \033[0;31mfailed\033[0;39m. --#\n\nPlease check the log file: {log_file}\n",
}


def write_motd(status: StatusName, log_file: str | Path, path: str | Path = "/etc/motd") -> None:
    """Write the on-login notice; a finished run clears it."""
    path = Path(path)
    template = MOTD_TEMPLATES.get(status)
    path.write_text(template.format(log_file=log_file) if template else "")


class StatusReporter(Protocol):
    name: str

    def report(self, status: StatusName) -> None: ...


class NullReporter:
    name = "none"

    def report(self, status: StatusName) -> None:
        pass


class SakuraCloudReporter:
    """Tags the server through the Sakura Cloud API."""

    name = "sakura"

    def __init__(self, zone: str, server_id: str, *, client: httpx.Client | None = None):
        load_dotenv()
        token = os.getenv("SACLOUD_ACCESS_TOKEN")
        secret = os.getenv("SACLOUD_ACCESS_TOKEN_SECRET")
        if not token or not secret:
            raise SettingsError(
                "Status reporter 'sakura' needs SACLOUD_ACCESS_TOKEN and SACLOUD_ACCESS_TOKEN_SECRET"
            )
        self.url = SAKURA_API_URL.format(zone=zone, server_id=server_id)
        self._auth = (token, secret)
        self._client = client

    def report(self, status: StatusName) -> None:
        body = {"Server": {"Tags": [f"setup-{status}"]}}
        if self._client is not None:
            response = self._client.put(self.url, json=body, auth=self._auth, timeout=10)
        else:
            response = httpx.put(self.url, json=body, auth=self._auth, timeout=10)
        response.raise_for_status()


class AWSReporter:
    """Tags the EC2 instance with the run status."""

    name = "aws"

    def __init__(self, instance_id: str, region: str | None = None, *, ec2=None):
        self.instance_id = instance_id
        if ec2 is None:
            load_dotenv()
            aws_config = {}
            if os.getenv("AWS_PROFILE"):
                aws_config["profile_name"] = os.getenv("AWS_PROFILE")
            region = region or os.getenv("AWS_REGION")
            if region:
                aws_config["region_name"] = region
            ec2 = boto3.Session(**aws_config).client("ec2")
        self._ec2 = ec2

    def report(self, status: StatusName) -> None:
        self._ec2.create_tags(
            Resources=[self.instance_id],
            Tags=[{"Key": AWS_STATUS_TAG, "Value": status}],
        )


def get_reporter(settings: Settings) -> StatusReporter:
    """Get the status reporter named in settings."""
    status = settings.status
    if status.reporter == "sakura":
        return SakuraCloudReporter(status.zone, status.server_id)
    elif status.reporter == "aws":
        return AWSReporter(status.instance_id, status.region)
    return NullReporter()


def notify(
    status: StatusName,
    reporter: StatusReporter,
    *,
    log_file: str | Path,
    motd_path: str | Path | None = None,
) -> None:
    """Publish run status. Failures are logged, never raised."""
    if motd_path is not None:
        try:
            write_motd(status, log_file, motd_path)
        except OSError as e:
            warn(f"Cannot write login notice '{motd_path}': {e}")
    try:
        reporter.report(status)
    except (httpx.HTTPError, ClientError, BotoCoreError) as e:
        warn(f"Status report '{status}' via '{reporter.name}' failed: {e}")
    else:
        if reporter.name != "none":
            log(f"Reported status '{status}' via '{reporter.name}'")
