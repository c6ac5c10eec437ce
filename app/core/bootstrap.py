"""First-boot script for the compute node.

The controller never sees the steps inside; its only contract is that the
script ends by PUTting exactly one ``SUCCESS`` or ``FAILURE`` document to the
handshake address.
"""
from __future__ import annotations
import json
import shlex
from typing import Dict, Optional

_TEMPLATE = r"""#!/bin/bash
set -e
set -o pipefail

SIGNAL_URL={signal_url}
SIGNALED=0

function signal_controller() {{
  local status=$1
  local message=$2
  if [ "$SIGNALED" = "1" ]; then
    return 0
  fi
  SIGNALED=1
  echo "Signaling with status: $status, message: $message"
  curl -sS -X PUT -H 'Content-Type: application/json' \
    --data-binary "{{\"Status\":\"$status\",\"Reason\":\"$message\",\"UniqueId\":\"{unique_id}\",\"Data\":\"$message\"}}" \
    "$SIGNAL_URL" || true
}}

function handle_error() {{
  echo "Error: $1"
  signal_controller FAILURE "$1"
  exit 1
}}

trap 'handle_error "Script interrupted"' INT TERM
trap 'handle_error "Command failed at line $LINENO"' ERR

exec > >(tee /var/log/user-data.log | logger -t user-data -s 2>/dev/console) 2>&1
echo "Starting bootstrap..."

{agent_source}

{install}
{heartbeat}

echo "Verifying environment..."
{verify}

signal_controller SUCCESS "Configuration Complete"
"""

DEFAULT_INSTALL = [
    "yum update -y",
    "yum install -y ruby wget",
    "mkdir -p /home/{user}/app && chown -R {user}:{user} /home/{user}/app",
    "sudo -u {user} bash -c 'curl -o- https://raw.githubusercontent.com/nvm-sh/nvm/v0.39.7/install.sh | bash'",
    "sudo -u {user} bash -c 'source $HOME/.nvm/nvm.sh && nvm install {runtime_version} && nvm alias default {runtime_version}'",
    "sudo -u {user} bash -c 'source $HOME/.nvm/nvm.sh && npm install -g pm2'",
    "curl -fsSL -o /tmp/agent-install \"$AGENT_INSTALL_URL\" && chmod +x /tmp/agent-install && /tmp/agent-install auto",
    "systemctl daemon-reload && systemctl enable {agent_service} && systemctl start {agent_service}",
]

DEFAULT_VERIFY: Dict[str, str] = {
    "runtime": "sudo -u {user} bash -c 'source $HOME/.nvm/nvm.sh && node --version'",
    "package manager": "sudo -u {user} bash -c 'source $HOME/.nvm/nvm.sh && npm --version'",
    "process supervisor": "sudo -u {user} bash -c 'source $HOME/.nvm/nvm.sh && pm2 --version'",
    "deployment agent": "systemctl is-active --quiet {agent_service}",
}


# Installer published per region; used when the node config names no URL.
REGIONAL_AGENT_SOURCE = (
    "REGION=$(curl -s http://169.254.169.254/latest/meta-data/placement/region)\n"
    'AGENT_INSTALL_URL="https://aws-codedeploy-${REGION}.s3.${REGION}.amazonaws.com/latest/install"'
)

HEARTBEAT_UNITS = """cat > /etc/systemd/system/controller-heartbeat.service <<'UNIT'
[Unit]
Description=Release controller heartbeat
After=network-online.target

[Service]
Type=oneshot
ExecStart=/usr/bin/curl -fsS -X POST {heartbeat_url}
UNIT
cat > /etc/systemd/system/controller-heartbeat.timer <<'UNIT'
[Timer]
OnBootSec=10s
OnUnitActiveSec={interval}s

[Install]
WantedBy=timers.target
UNIT
systemctl daemon-reload && systemctl enable --now controller-heartbeat.timer || handle_error 'heartbeat timer could not be enabled'"""


def render_bootstrap_script(
    signal_url: str,
    unique_id: str = "ConfigComplete",
    user: str = "ec2-user",
    runtime_version: str = "20",
    agent_install_url: Optional[str] = None,
    agent_service: str = "deploy-agent",
    heartbeat_url: Optional[str] = None,
    heartbeat_interval: int = 30,
) -> str:
    fmt = dict(user=user, runtime_version=runtime_version, agent_service=agent_service)
    if agent_install_url:
        agent_source = f"AGENT_INSTALL_URL={shlex.quote(agent_install_url)}"
    else:
        agent_source = REGIONAL_AGENT_SOURCE
    install = "\n".join(
        f"{step.format(**fmt)} || handle_error {shlex.quote('install step failed: ' + step.format(**fmt)[:60])}"
        for step in DEFAULT_INSTALL
    )
    verify = dict(DEFAULT_VERIFY)
    heartbeat = ""
    if heartbeat_url:
        heartbeat = HEARTBEAT_UNITS.format(heartbeat_url=heartbeat_url, interval=heartbeat_interval)
        verify["heartbeat timer"] = "systemctl is-active --quiet controller-heartbeat.timer"
    verify_block = "\n".join(
        f"if ! {cmd.format(**fmt)}; then\n  handle_error {shlex.quote(what + ' not properly installed')}\nfi"
        for what, cmd in verify.items()
    )
    return _TEMPLATE.format(
        signal_url=shlex.quote(signal_url),
        unique_id=json.dumps(unique_id)[1:-1],
        agent_source=agent_source,
        install=install,
        heartbeat=heartbeat,
        verify=verify_block,
    )
