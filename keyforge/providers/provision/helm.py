from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from keyforge.core.config import get_settings
from keyforge.core.errors import ProvisionBackendError


logger = logging.getLogger(__name__)

CommandResult = tuple[int, str, str]
CommandRunner = Callable[[list[str], float], Awaitable[CommandResult]]


async def run_command(cmd: list[str], timeout_s: float) -> CommandResult:
    # Run a CLI with a hard deadline; kill it if the deadline passes.
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise ProvisionBackendError(f"{cmd[0]} {cmd[1]} timed out after {timeout_s:g}s") from exc
    return (
        process.returncode if process.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class HelmProvisionBackend:
    """Provision tenant vaults with helm and probe them with kubectl.

    Each instance gets its own namespace named after the instance id.
    """

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._settings = get_settings()
        self._run = runner or run_command

    async def _checked(self, cmd: list[str]) -> str:
        try:
            returncode, stdout, stderr = await self._run(cmd, self._settings.provision_command_timeout_s)
        except FileNotFoundError as exc:
            raise ProvisionBackendError(f"{cmd[0]} binary not found") from exc
        if returncode != 0:
            detail = stderr.strip() or stdout.strip() or f"exit code {returncode}"
            raise ProvisionBackendError(f"{cmd[0]} {cmd[1]} failed: {detail}")
        return stdout

    async def create(self, instance_id: str, admin_secret: str) -> None:
        # upgrade --install keeps a retried install from failing on an existing release.
        cmd = [
            self._settings.helm_binary,
            "upgrade",
            "--install",
            instance_id,
            self._settings.helm_chart_path,
            "--namespace",
            instance_id,
            "--create-namespace",
            "--set",
            f"vaultwd.adminToken={admin_secret}",
            "--wait",
            "--timeout",
            self._settings.helm_wait_timeout,
        ]
        await self._checked(cmd)
        logger.info("helm_release_installed instance_id=%s", instance_id)

    async def is_ready(self, namespace: str, component: str) -> bool:
        cmd = [
            self._settings.kubectl_binary,
            "get",
            "deployment",
            component,
            "-n",
            namespace,
            "-o",
            'jsonpath={.status.conditions[?(@.type=="Available")].status}',
        ]
        returncode, stdout, _stderr = await self._run(cmd, self._settings.provision_command_timeout_s)
        # A missing deployment is "not ready yet", not an error.
        return returncode == 0 and stdout.strip() == "True"

    async def destroy(self, instance_id: str) -> None:
        await self._checked(
            [self._settings.helm_binary, "uninstall", instance_id, "--namespace", instance_id]
        )
        await self._checked([self._settings.kubectl_binary, "delete", "namespace", instance_id])
        logger.info("helm_release_removed instance_id=%s", instance_id)
