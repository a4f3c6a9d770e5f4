import os
from typing import Optional, Tuple

from dotenv import load_dotenv


class Config:
    """Loads and manages runtime settings from environment variables."""

    load_dotenv()

    STATE_DIR_NAME = os.getenv("VMFLEET_STATE_DIR", ".vmfleet")
    STATE_FILE_NAME = "state.json"
    ARTIFACT_ROOT = os.getenv("VMFLEET_ARTIFACT_ROOT", "~/.vmfleet/vms")
    DISK_EXTENSION = os.getenv("VMFLEET_DISK_EXTENSION", "qcow2")

    COMMAND_TIMEOUT = int(os.getenv("VMFLEET_COMMAND_TIMEOUT", "30"))
    SHUTDOWN_TIMEOUT = int(os.getenv("VMFLEET_SHUTDOWN_TIMEOUT", "30"))
    POLL_INTERVAL = float(os.getenv("VMFLEET_POLL_INTERVAL", "1"))

    FAILURE_POLICY = os.getenv("VMFLEET_FAILURE_POLICY", "stop").strip().lower()
    LOG_LEVEL = os.getenv("VMFLEET_LOG_LEVEL", "WARNING").upper()

    # Proxmox actuator
    API_TOKEN = os.getenv("API_TOKEN")
    PROXMOX_HOST = os.getenv("PROXMOX_HOST", "pve.maas")
    PROXMOX_NODE = os.getenv("PROXMOX_NODE", "pve")
    PROXMOX_BRIDGE = os.getenv("PROXMOX_BRIDGE", "vmbr0")
    PROXMOX_VERIFY_SSL = os.getenv("PROXMOX_VERIFY_SSL", "false").lower() == "true"

    @staticmethod
    def ssh_credentials() -> Tuple[str, str]:
        """Return (user, key path) for SSH access to the virtualization host."""
        ssh_user = os.getenv("SSH_USER", "root")
        ssh_key = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))
        return ssh_user, ssh_key

    @classmethod
    def api_token_parts(cls, token: Optional[str] = None) -> Tuple[str, str, str]:
        """Split an API token of the form ``user!token_name=secret``.

        Raises:
            ValueError: If the token is unset or malformed
        """
        raw = token if token is not None else os.getenv("API_TOKEN", cls.API_TOKEN or "")
        if not raw:
            raise ValueError("API_TOKEN environment variable is not set")
        try:
            user_token, secret = raw.split("=", 1)
            user, token_name = user_token.split("!", 1)
        except ValueError:
            raise ValueError("API_TOKEN must look like 'user@realm!token_name=secret'")
        return user, token_name, secret

    @staticmethod
    def default_artifact_path(project_name: str) -> str:
        """Default directory for a project's disk artifacts."""
        root = os.path.expanduser(os.getenv("VMFLEET_ARTIFACT_ROOT", Config.ARTIFACT_ROOT))
        return os.path.join(root, project_name)
