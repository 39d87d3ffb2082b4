"""Run external commands locally or on the Proxmox host over SSH."""

import logging
import os
import shlex
import shutil
import socket
import subprocess
from typing import Dict, Optional, Sequence

import paramiko

from pvetemplate.config import Config
from pvetemplate.models import CommandError, CommandResult, MissingDependencyError

logger = logging.getLogger(__name__)


class CommandRunner:
    """Executes argument lists with exit-code checking and dry-run support.

    When ``host`` is set every command is sent to that host through a single
    paramiko session; otherwise ``subprocess.run`` is used. In dry-run mode
    mutating commands are only logged, while read-only probes (``readonly=True``)
    still run when the binary is available so VMID lookups stay meaningful.
    """

    def __init__(self, host: Optional[str] = None, dry_run: bool = False, timeout: Optional[int] = None) -> None:
        self.host = host or None
        self.dry_run = dry_run
        self.timeout = timeout or Config.COMMAND_TIMEOUT
        self._ssh: Optional[paramiko.SSHClient] = None
        self._which_cache: Dict[str, bool] = {}

    @property
    def is_remote(self) -> bool:
        return self.host is not None

    def __enter__(self) -> "CommandRunner":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None

    def _client(self) -> paramiko.SSHClient:
        if self._ssh is None:
            logger.debug(f"Opening SSH session to {Config.SSH_USER}@{self.host}")
            ssh = paramiko.SSHClient()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            ssh.connect(hostname=self.host, username=Config.SSH_USER, key_filename=Config.SSH_KEY_PATH)
            self._ssh = ssh
        return self._ssh

    def run(
        self,
        args: Sequence[object],
        check: bool = True,
        readonly: bool = False,
        input_text: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        """
        Run a command.

        Args:
            args: Program and arguments
            check: Raise CommandError on non-zero exit
            readonly: The command does not change any state (runs in dry-run mode)
            input_text: Text fed to stdin
            timeout: Seconds before the command is abandoned

        Returns:
            CommandResult with decoded stdout/stderr

        Raises:
            CommandError: If the command fails (with check) or times out
            MissingDependencyError: If the program is not installed
        """
        argv = [str(a) for a in args]
        cmdline = shlex.join(argv)

        if self.dry_run and not readonly:
            logger.info(f"[DRY RUN] Would run: {cmdline}")
            return CommandResult(argv, 0, dry_run=True)
        if self.dry_run and not self.which(argv[0]):
            logger.debug(f"[DRY RUN] {argv[0]} not available, skipping probe: {cmdline}")
            return CommandResult(argv, 1, stderr=f"{argv[0]}: not found", dry_run=True)

        logger.debug(f"Running: {cmdline}")
        timeout = timeout or self.timeout
        if self.is_remote:
            result = self._run_remote(argv, input_text, timeout)
        else:
            result = self._run_local(argv, input_text, timeout)

        if result.stdout.strip():
            logger.debug(result.stdout.strip())
        if check and not result.ok:
            logger.error(f"Command failed ({result.returncode}): {cmdline}")
            raise CommandError(argv, result.returncode, result.stderr)
        return result

    def _run_local(self, argv: Sequence[str], input_text: Optional[str], timeout: int) -> CommandResult:
        try:
            proc = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                input=input_text,
                timeout=timeout,
            )
        except FileNotFoundError:
            raise MissingDependencyError(f"Required command not found: {argv[0]}")
        except subprocess.TimeoutExpired:
            logger.error(f"Timeout after {timeout}s: {shlex.join(argv)}")
            raise CommandError(argv, 124, f"timed out after {timeout}s")
        return CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")

    def _run_remote(self, argv: Sequence[str], input_text: Optional[str], timeout: int) -> CommandResult:
        stdin, stdout, stderr = self._client().exec_command(shlex.join(argv), timeout=timeout)
        try:
            if input_text is not None:
                stdin.write(input_text)
                stdin.channel.shutdown_write()
            out = stdout.read().decode()
            err = stderr.read().decode()
            returncode = stdout.channel.recv_exit_status()
        except socket.timeout:
            logger.error(f"Timeout after {timeout}s on {self.host}: {shlex.join(argv)}")
            raise CommandError(argv, 124, f"timed out after {timeout}s")

        if returncode == 127 and argv[0] in err:
            raise MissingDependencyError(f"Required command not found on {self.host}: {argv[0]}")
        return CommandResult(argv, returncode, out, err)

    def which(self, binary: str) -> bool:
        """Return True if ``binary`` is on PATH where commands run."""
        if binary not in self._which_cache:
            if self.is_remote:
                result = self._run_remote(["sh", "-c", f"command -v {shlex.quote(binary)}"], None, 30)
                self._which_cache[binary] = result.ok
            else:
                self._which_cache[binary] = shutil.which(binary) is not None
        return self._which_cache[binary]

    def put_file(self, local_path: str, remote_path: str) -> None:
        """Copy a local file to ``remote_path`` on the command host."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would copy {local_path} → {remote_path}")
            return
        if not self.is_remote:
            if os.path.abspath(local_path) == os.path.abspath(remote_path):
                return
            os.makedirs(os.path.dirname(remote_path) or ".", exist_ok=True)
            shutil.copy2(local_path, remote_path)
            return

        self.run(["mkdir", "-p", os.path.dirname(remote_path)])
        logger.info(f"📤 Uploading {os.path.basename(local_path)} → {self.host}:{remote_path}")
        sftp = self._client().open_sftp()
        try:
            sftp.put(local_path, remote_path)
        finally:
            sftp.close()

    def write_text(self, path: str, content: str) -> None:
        """Write ``content`` to ``path`` on the command host."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would write {path}")
            return
        if not self.is_remote:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(path, "w") as f:
                f.write(content)
            return

        self.run(["mkdir", "-p", os.path.dirname(path)])
        sftp = self._client().open_sftp()
        try:
            with sftp.open(path, "w") as f:
                f.write(content)
        finally:
            sftp.close()

    def exists(self, path: str) -> bool:
        """Return True if ``path`` exists on the command host."""
        if not self.is_remote:
            return os.path.exists(path)
        return self._run_remote(["test", "-e", path], None, 30).ok
