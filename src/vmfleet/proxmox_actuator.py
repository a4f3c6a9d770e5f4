"""Actuator backed by a Proxmox VE node.

VM lifecycle and snapshots go through the Proxmox API via proxmoxer. Disk
artifacts live as qcow2 files on the host and are prepared over SSH, since
the API cannot create overlay images on a plain directory.
"""

import logging
import os
import shlex
import socket
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import paramiko
import requests
from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException

from vmfleet.actuator import Actuator, CreatedResource, CreateRequest, AvailabilityResult, SnapshotInfo, classify_error_text
from vmfleet.config import Config
from vmfleet.errors import ActuatorError, ActuatorErrorKind
from vmfleet.models import ObservedResource, RuntimeState
from vmfleet.state_store import timestamp

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "running": RuntimeState.RUNNING,
    "stopped": RuntimeState.OFF,
    "paused": RuntimeState.PAUSED,
    "suspended": RuntimeState.SAVED,
    "prelaunch": RuntimeState.TRANSITIONAL,
}

TASK_POLL_INTERVAL = 1


def runtime_state_for(vm: dict) -> RuntimeState:
    """Map a qemu list entry to a RuntimeState."""
    if vm.get("lock"):
        return RuntimeState.TRANSITIONAL
    status = vm.get("qmpstatus") or vm.get("status") or ""
    return _STATUS_MAP.get(status, RuntimeState.OTHER)


def translate_error(e: Exception, action: str) -> ActuatorError:
    """Convert a proxmoxer/requests/paramiko failure into an ActuatorError."""
    if isinstance(e, ActuatorError):
        return e
    if isinstance(e, ResourceException):
        status = getattr(e, "status_code", None)
        if status in (401, 403):
            kind = ActuatorErrorKind.ACCESS_DENIED
        elif status == 404:
            kind = ActuatorErrorKind.NOT_FOUND
        else:
            kind = classify_error_text(str(e))
        return ActuatorError(f"{action} failed: {e}", kind, detail=str(e))
    if isinstance(e, (requests.exceptions.Timeout, socket.timeout)):
        return ActuatorError(f"{action} timed out", ActuatorErrorKind.TIMED_OUT, detail=str(e))
    if isinstance(e, (requests.exceptions.ConnectionError, paramiko.SSHException, ConnectionError)):
        return ActuatorError(f"{action} failed: host unreachable ({e})", ActuatorErrorKind.UNAVAILABLE, detail=str(e))
    return ActuatorError(f"{action} failed: {e}", classify_error_text(str(e)), detail=str(e))


class ProxmoxActuator(Actuator):
    """Manages VMs on one Proxmox node."""

    def __init__(
        self,
        host: Optional[str] = None,
        node: Optional[str] = None,
        bridge: Optional[str] = None,
        timeout: Optional[int] = None,
        shutdown_timeout: Optional[int] = None,
        verify_ssl: Optional[bool] = None,
        proxmox: Any = None,
    ) -> None:
        """Initialize the actuator.

        Args:
            host: Proxmox host name, also used for SSH
            node: Proxmox node name
            bridge: Bridge the VMs' first NIC attaches to
            timeout: Seconds allowed for each API call, task or SSH command
            shutdown_timeout: Seconds a graceful shutdown task may run on the node
            verify_ssl: Verify the API certificate
            proxmox: Pre-built API client, mainly for tests
        """
        self.host = host or Config.PROXMOX_HOST
        self.node = node or Config.PROXMOX_NODE
        self.bridge = bridge or Config.PROXMOX_BRIDGE
        self.timeout = timeout or Config.COMMAND_TIMEOUT
        self.shutdown_timeout = shutdown_timeout or Config.SHUTDOWN_TIMEOUT
        self.verify_ssl = Config.PROXMOX_VERIFY_SSL if verify_ssl is None else verify_ssl
        self._proxmox = proxmox
        self._shutdown_tasks: Dict[str, str] = {}

    @property
    def proxmox(self) -> Any:
        if self._proxmox is None:
            try:
                user, token_name, secret = Config.api_token_parts()
            except ValueError as e:
                raise ActuatorError(str(e), ActuatorErrorKind.ACCESS_DENIED)
            self._proxmox = ProxmoxAPI(
                self.host,
                user=user,
                token_name=token_name,
                token_value=secret,
                verify_ssl=self.verify_ssl,
                timeout=self.timeout,
            )
        return self._proxmox

    def _node(self) -> Any:
        return self.proxmox.nodes(self.node)

    def _vm(self, platform_id: str) -> Any:
        return self._node().qemu(int(platform_id))

    def _call(self, action: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except Exception as e:
            raise translate_error(e, action) from e

    def _wait_for_task(self, upid: Optional[str], action: str) -> None:
        """Block until a Proxmox task finishes, bounded by the command timeout."""
        if not upid:
            return
        deadline = time.time() + self.timeout
        while time.time() < deadline:
            status = self._call(action, lambda: self._node().tasks(upid).status.get())
            if status.get("status") == "stopped":
                exit_status = status.get("exitstatus", "")
                if exit_status != "OK":
                    raise ActuatorError(f"{action} failed: {exit_status}", classify_error_text(exit_status), exit_status)
                return
            time.sleep(TASK_POLL_INTERVAL)
        raise ActuatorError(f"{action} did not finish within {self.timeout}s", ActuatorErrorKind.TIMED_OUT)

    def _ssh_exec(self, command: str, action: str) -> Tuple[int, str, str]:
        """Run a command on the host over SSH and return (exit status, stdout, stderr)."""
        ssh_user, ssh_key = Config.ssh_credentials()
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(hostname=self.host, username=ssh_user, key_filename=ssh_key, timeout=self.timeout)
            stdin, stdout, stderr = ssh.exec_command(command, timeout=self.timeout)
            out = stdout.read().decode().strip()
            err = stderr.read().decode().strip()
            exit_status = stdout.channel.recv_exit_status()
        except Exception as e:
            raise translate_error(e, action) from e
        finally:
            ssh.close()
        logger.debug(f"ssh {self.host} '{command}' -> {exit_status}")
        return exit_status, out, err

    def _ssh_run(self, command: str, action: str) -> str:
        exit_status, out, err = self._ssh_exec(command, action)
        if exit_status != 0:
            raise ActuatorError(f"{action} failed: {err or out}", classify_error_text(err or out), err)
        return out

    def query(self) -> List[ObservedResource]:
        vms = self._call("List VMs", lambda: self._node().qemu.get(full=1))
        resources = []
        for vm in vms:
            vmid = str(vm["vmid"])
            vm_config = self._call(f"Read config of VM {vmid}", lambda: self._vm(vmid).config.get())
            resources.append(
                ObservedResource(
                    platform_id=vmid,
                    name=vm.get("name", ""),
                    runtime_state=runtime_state_for(vm),
                    metadata_note=vm_config.get("description"),
                    cpu=int(vm.get("cpus") or vm_config.get("cores") or 0),
                    memory_mb=int(vm.get("maxmem") or 0) // (1024 * 1024),
                )
            )
        return resources

    def next_vmid(self) -> int:
        """Find the next free VMID using the cluster-wide resources query."""
        resources = self._call("List cluster resources", lambda: self.proxmox.cluster.resources.get(type="vm"))
        used = {int(resource["vmid"]) for resource in resources}
        for candidate in range(100, 1000000000):
            if candidate not in used:
                return candidate
        raise ActuatorError("No available VMIDs found")

    def create(self, request: CreateRequest) -> CreatedResource:
        disk = shlex.quote(request.disk_path)
        base = shlex.quote(request.base_image_path)
        if request.differencing:
            prepare = f"qemu-img create -f qcow2 -F qcow2 -b {base} {disk}"
        else:
            prepare = f"cp {base} {disk}"
        self._ssh_run(f"mkdir -p {shlex.quote(os.path.dirname(request.disk_path))} && {prepare}",
                      f"Prepare disk {request.disk_path}")

        vmid = self.next_vmid()
        logger.info(f"Creating VM {request.name} (vmid={vmid}): {request.cpu} CPUs, {request.memory_mb}MB RAM")
        upid = self._call(
            f"Create VM {request.name}",
            lambda: self._node().qemu.create(
                vmid=vmid,
                name=request.name,
                cores=request.cpu,
                memory=request.memory_mb,
                description=request.note,
                net0=f"virtio,bridge={self.bridge}",
                scsihw="virtio-scsi-pci",
                ostype="l26",
                agent=1,
            ),
        )
        try:
            self._wait_for_task(upid, f"Create VM {request.name}")
            # Attaching a file path as a drive is root-only, so it goes through qm
            self._ssh_run(f"qm set {vmid} --scsi0 {disk} --boot order=scsi0", f"Attach disk to VM {vmid}")
        except ActuatorError:
            self._rollback_create(str(vmid), request.disk_path)
            raise
        return CreatedResource(platform_id=str(vmid), name=request.name)

    def _rollback_create(self, platform_id: str, disk_path: str) -> None:
        """Remove a VM that carries our name and marker but has no state record yet."""
        logger.warning(f"Removing partially created VM {platform_id}")
        try:
            upid = self._call(f"Delete VM {platform_id}", lambda: self._vm(platform_id).delete(purge=1))
            self._wait_for_task(upid, f"Delete VM {platform_id}")
        except ActuatorError as e:
            logger.error(f"Could not remove partially created VM {platform_id}, remove it manually: {e}")
        try:
            self.delete_artifact(disk_path)
        except ActuatorError as e:
            logger.warning(f"Could not delete disk {disk_path}: {e}")

    def start(self, platform_id: str) -> None:
        upid = self._call(f"Start VM {platform_id}", lambda: self._vm(platform_id).status.start.post())
        self._wait_for_task(upid, f"Start VM {platform_id}")

    def stop(self, platform_id: str, force: bool = False) -> None:
        if force:
            self._abort_shutdown(platform_id)
            upid = self._call(f"Stop VM {platform_id}", lambda: self._vm(platform_id).status.stop.post())
            self._wait_for_task(upid, f"Stop VM {platform_id}")
        else:
            # Shutdown tasks run until the guest is off; the caller polls for that
            upid = self._call(
                f"Shut down VM {platform_id}",
                lambda: self._vm(platform_id).status.shutdown.post(timeout=self.shutdown_timeout),
            )
            if upid:
                self._shutdown_tasks[platform_id] = upid

    def _abort_shutdown(self, platform_id: str) -> None:
        """Stop a pending shutdown task so it releases the VM lock."""
        upid = self._shutdown_tasks.pop(platform_id, None)
        if not upid:
            return
        status = self._call(f"Read shutdown task of VM {platform_id}", lambda: self._node().tasks(upid).status.get())
        if status.get("status") == "running":
            logger.info(f"Aborting shutdown task {upid} of VM {platform_id}")
            self._call(f"Abort shutdown of VM {platform_id}", lambda: self._node().tasks(upid).delete())

    def destroy(self, platform_id: str) -> None:
        status = self._call(f"Read status of VM {platform_id}", lambda: self._vm(platform_id).status.current.get())
        if status.get("status") == "running":
            self.stop(platform_id, force=True)
        upid = self._call(f"Delete VM {platform_id}", lambda: self._vm(platform_id).delete(purge=1))
        self._wait_for_task(upid, f"Delete VM {platform_id}")

    def snapshot(self, platform_id: str, name: str) -> SnapshotInfo:
        upid = self._call(
            f"Snapshot VM {platform_id}",
            lambda: self._vm(platform_id).snapshot.post(snapname=name, description="vmfleet checkpoint"),
        )
        self._wait_for_task(upid, f"Snapshot VM {platform_id}")
        return SnapshotInfo(id=name, name=name, created_at=timestamp())

    def restore_snapshot(self, platform_id: str, snapshot_id: str) -> None:
        upid = self._call(
            f"Restore VM {platform_id}",
            lambda: self._vm(platform_id).snapshot(snapshot_id).rollback.post(),
        )
        self._wait_for_task(upid, f"Restore VM {platform_id}")

    def delete_artifact(self, path: str) -> None:
        self._ssh_run(f"rm -f {shlex.quote(path)}", f"Delete {path}")

    def artifact_exists(self, path: str) -> bool:
        exit_status, _, _ = self._ssh_exec(f"test -f {shlex.quote(path)}", f"Check {path}")
        return exit_status == 0

    def check_available(self) -> AvailabilityResult:
        try:
            version = self._call("Query Proxmox version", lambda: self.proxmox.version.get())
            node_status = self._call(f"Query node {self.node}", lambda: self._node().status.get())
        except ActuatorError as e:
            return AvailabilityResult(available=False, message=e.message, details=[e.kind.value])
        return AvailabilityResult(
            available=True,
            message=f"Proxmox VE {version.get('version', 'unknown')} on node {self.node}",
            details=[f"uptime={node_status.get('uptime', 0)}"],
        )

    def network_exists(self, name: str) -> bool:
        interfaces = self._call(f"List networks on {self.node}", lambda: self._node().network.get())
        return any(iface.get("iface") == name for iface in interfaces)
