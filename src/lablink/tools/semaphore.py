"""
Semaphore API client and the provisioning tool built on it.

Semaphore runs the Terraform templates for a fleet. The client submits a task,
polls it to completion within the hard timeout and reads the task log, in
which the template prints ``terraform output -json``.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from ..errors import ToolFailure, ToolTimeout
from ..logging import get_logger
from .base import (
    DestroySpec,
    ProvisionSpec,
    ToolResult,
    extract_json_object,
    new_instances,
    parse_fleet_outputs,
)

TERMINAL_STATUSES = ("success", "error", "failed", "stopped")


class SemaphoreTaskResponse(BaseModel):
    """Response model for Semaphore task operations."""

    task_id: str
    status: str  # waiting, running, success, error
    message: Optional[str] = None


class SemaphoreClient:
    """
    HTTP client for a Semaphore automation server.

    Provides methods to submit template tasks, poll task status and fetch
    task output. HTTP failures are raised as ToolFailure.
    """

    def __init__(self, base_url: str, project_id: int = 1, timeout: int = 30):
        """
        Initialize Semaphore client.

        Args:
            base_url: Semaphore server URL (e.g., http://semaphore:3000)
            project_id: Semaphore project holding the fleet templates
            timeout: HTTP request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.timeout = timeout
        self.logger = get_logger("lablink.semaphore")

    @property
    def tasks_url(self) -> str:
        return f"{self.base_url}/api/project/{self.project_id}/tasks"

    async def run_template(
        self,
        template_id: int,
        fleet: str,
        action: str,
        extra_vars: Optional[Dict[str, Any]] = None,
    ) -> SemaphoreTaskResponse:
        """
        Submit a template task.

        Args:
            template_id: Semaphore template ID to run
            fleet: Fleet the task operates on
            action: "provision" or "destroy"
            extra_vars: Variables handed to the template

        Returns:
            The created task
        """
        payload = {
            "template_id": template_id,
            "environment": {"FLEET": fleet, "ACTION": action},
            "extra_vars": {"fleet": fleet, **(extra_vars or {})},
        }
        self.logger.log_tool_invoke(
            "semaphore", action, fleet, metadata={"template_id": template_id, "url": self.tasks_url}
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.tasks_url, json=payload)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.log_tool_error("semaphore", action, str(e), fleet=fleet)
            raise ToolFailure(f"Semaphore task submission failed: {e}", diagnostics=str(e))

        return SemaphoreTaskResponse(
            task_id=str(data.get("task_id", data.get("id"))),
            status=data.get("status", "waiting"),
            message=data.get("message"),
        )

    async def get_task_status(self, task_id: str) -> SemaphoreTaskResponse:
        """Get status of a Semaphore task."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.tasks_url}/{task_id}")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.log_tool_error("semaphore", "get_task_status", str(e), task_id=task_id)
            raise ToolFailure(f"Semaphore status check failed for task {task_id}: {e}")

        return SemaphoreTaskResponse(
            task_id=task_id,
            status=data.get("status", "unknown"),
            message=data.get("message"),
        )

    async def get_task_output(self, task_id: str) -> str:
        """Concatenated log lines of a task."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.tasks_url}/{task_id}/output")
                response.raise_for_status()
                lines = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.log_tool_error("semaphore", "get_task_output", str(e), task_id=task_id)
            raise ToolFailure(f"Semaphore output fetch failed for task {task_id}: {e}")

        return "\n".join(str(line.get("output", "")) for line in lines or [])

    async def stop_task(self, task_id: str) -> None:
        """Ask Semaphore to stop a task that overran its timeout."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.tasks_url}/{task_id}/stop", json={})
                response.raise_for_status()
        except httpx.HTTPError as e:
            self.logger.log_tool_error("semaphore", "stop_task", str(e), task_id=task_id)

    async def wait_for_task_completion(
        self, task_id: str, timeout_seconds: float, poll_interval: float = 2.0
    ) -> SemaphoreTaskResponse:
        """
        Wait for a Semaphore task to reach a terminal status.

        Raises:
            ToolTimeout: the task did not finish within ``timeout_seconds``;
                it is asked to stop before raising
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            status_response = await self.get_task_status(task_id)
            if status_response.status in TERMINAL_STATUSES:
                return status_response

            elapsed = loop.time() - start_time
            if elapsed + poll_interval > timeout_seconds:
                await self.stop_task(task_id)
                self.logger.log_tool_error(
                    "semaphore",
                    "wait_for_task_completion",
                    f"Timeout after {timeout_seconds}s",
                    timeout=True,
                    task_id=task_id,
                )
                raise ToolTimeout("semaphore task", timeout_seconds)

            await asyncio.sleep(poll_interval)


class SemaphoreTool:
    """Provisioning tool that runs the fleet's Terraform templates on Semaphore."""

    name = "semaphore"

    def __init__(
        self,
        client: SemaphoreClient,
        provision_template_id: int,
        destroy_template_id: int,
        poll_interval: float = 2.0,
    ):
        self.client = client
        self.provision_template_id = provision_template_id
        self.destroy_template_id = destroy_template_id
        self.poll_interval = poll_interval

    async def provision(self, spec: ProvisionSpec) -> ToolResult:
        task = await self.client.run_template(
            self.provision_template_id,
            spec.fleet,
            "provision",
            extra_vars={
                "instance_count": spec.desired_total,
                "machine_type": spec.machine_type,
                "image_name": spec.image_name,
                "region": spec.region,
                "resource_suffix": spec.fleet,
            },
        )
        final = await self.client.wait_for_task_completion(
            task.task_id, spec.timeout_seconds, self.poll_interval
        )
        output = await self.client.get_task_output(task.task_id)

        outputs = extract_json_object(output) or {}
        created = new_instances(parse_fleet_outputs(outputs), spec.existing_instance_ids)
        missing = max(spec.count - len(created), 0)
        return ToolResult(
            success=final.status == "success" and missing == 0,
            created=created,
            failed=self._missing(spec.fleet, missing),
            diagnostics=output if final.status != "success" or missing else "",
        )

    async def destroy(self, spec: DestroySpec) -> ToolResult:
        task = await self.client.run_template(
            self.destroy_template_id,
            spec.fleet,
            "destroy",
            extra_vars={
                "instance_ids": spec.instance_ids,
                "region": spec.region,
                "resource_suffix": spec.fleet,
            },
        )
        final = await self.client.wait_for_task_completion(
            task.task_id, spec.timeout_seconds, self.poll_interval
        )
        if final.status == "success":
            return ToolResult(success=True)
        return ToolResult(success=False, diagnostics=await self.client.get_task_output(task.task_id))

    @staticmethod
    def _missing(fleet: str, missing: int) -> List[str]:
        return [f"{fleet}-missing-{i + 1}" for i in range(missing)]
