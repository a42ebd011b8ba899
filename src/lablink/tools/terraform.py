"""
Terraform driven as a black-box subprocess.

Every invocation shares one hard deadline; when it expires the process is
killed and ToolTimeout is raised with whatever output was captured.
"""

import asyncio
import json
import os
from typing import Dict, List, Optional, Tuple

from ..errors import ToolFailure, ToolTimeout
from ..logging import get_logger
from .base import DestroySpec, ProvisionSpec, ToolResult, new_instances, parse_fleet_outputs


class TerraformTool:
    """Runs ``terraform`` in a working directory holding the client VM module."""

    name = "terraform"

    def __init__(
        self,
        working_dir: str,
        binary: str = "terraform",
        extra_env: Optional[Dict[str, str]] = None,
    ):
        self.working_dir = working_dir
        self.binary = binary
        self.extra_env = extra_env or {}
        self.logger = get_logger("lablink.tools.terraform")
        self._initialized = False

    async def provision(self, spec: ProvisionSpec) -> ToolResult:
        deadline = self._deadline(spec.timeout_seconds)
        await self._ensure_initialized("provision", spec.timeout_seconds, deadline)

        variables = self._variables(
            spec.fleet,
            spec.region,
            instance_count=spec.desired_total,
            machine_type=spec.machine_type,
            image_name=spec.image_name,
        )
        self.logger.log_tool_invoke(
            self.name,
            "apply",
            spec.fleet,
            metadata={"desired_total": spec.desired_total, "requested": spec.count},
        )
        apply_code, apply_output = await self._run(
            ["apply", "-auto-approve", "-input=false", "-no-color", *variables],
            "provision",
            spec.timeout_seconds,
            deadline,
        )

        # Read outputs even after a failed apply: some instances may exist
        output_code, output_text = await self._run(
            ["output", "-json", "-no-color"], "provision", spec.timeout_seconds, deadline
        )
        created = []
        diagnostics = apply_output
        if output_code == 0:
            try:
                created = new_instances(
                    parse_fleet_outputs(json.loads(output_text or "{}")),
                    spec.existing_instance_ids,
                )
            except ValueError as e:
                diagnostics += f"\nUnable to parse terraform outputs: {e}\n{output_text}"
        else:
            diagnostics += f"\nterraform output failed (exit {output_code}):\n{output_text}"

        missing = max(spec.count - len(created), 0)
        success = apply_code == 0 and missing == 0
        if not success:
            self.logger.log_tool_error(
                self.name,
                "apply",
                f"exit {apply_code}, created {len(created)}/{spec.count}",
                fleet=spec.fleet,
            )
        return ToolResult(
            success=success,
            created=created,
            failed=[f"{spec.fleet}-missing-{i + 1}" for i in range(missing)],
            diagnostics=diagnostics,
            exit_code=apply_code,
        )

    async def destroy(self, spec: DestroySpec) -> ToolResult:
        deadline = self._deadline(spec.timeout_seconds)
        await self._ensure_initialized("destroy", spec.timeout_seconds, deadline)

        variables = self._variables(spec.fleet, spec.region, instance_count=0)
        self.logger.log_tool_invoke(
            self.name, "destroy", spec.fleet, metadata={"instance_ids": spec.instance_ids}
        )
        code, output = await self._run(
            ["destroy", "-auto-approve", "-input=false", "-no-color", *variables],
            "destroy",
            spec.timeout_seconds,
            deadline,
        )
        if code != 0:
            self.logger.log_tool_error(self.name, "destroy", f"exit {code}", fleet=spec.fleet)
        return ToolResult(success=code == 0, diagnostics=output, exit_code=code)

    async def _ensure_initialized(self, operation: str, timeout: float, deadline: float) -> None:
        if self._initialized:
            return
        code, output = await self._run(
            ["init", "-input=false", "-no-color"], operation, timeout, deadline
        )
        if code != 0:
            raise ToolFailure("terraform init failed", diagnostics=output, exit_code=code)
        self._initialized = True

    def _variables(self, fleet: str, region: str, **values) -> List[str]:
        values = {"resource_suffix": fleet, "region": region, **values}
        return [f"-var={key}={value}" for key, value in values.items()]

    @staticmethod
    def _deadline(timeout: float) -> float:
        return asyncio.get_running_loop().time() + timeout

    async def _run(
        self, args: List[str], operation: str, timeout: float, deadline: float
    ) -> Tuple[int, str]:
        """Run one terraform command; returns (exit code, combined output)."""
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise ToolTimeout(operation, timeout)

        env = {**os.environ, "TF_IN_AUTOMATION": "1", **self.extra_env}
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                cwd=self.working_dir,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise ToolFailure(f"Unable to start {self.binary}: {e}", diagnostics=str(e))

        output = bytearray()

        async def _drain():
            while True:
                chunk = await proc.stdout.read(4096)
                if not chunk:
                    break
                output.extend(chunk)

        try:
            await asyncio.wait_for(asyncio.gather(_drain(), proc.wait()), remaining)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            diagnostics = output.decode("utf-8", errors="replace")
            self.logger.log_tool_error(
                self.name, operation, f"terraform {args[0]} exceeded {timeout}s", timeout=True
            )
            raise ToolTimeout(operation, timeout, diagnostics=diagnostics)

        return proc.returncode, output.decode("utf-8", errors="replace")
