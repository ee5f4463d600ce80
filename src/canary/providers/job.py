"""Job provider: arbitrary check logic run as an isolated subprocess.

The process starts from an empty environment. Only the job's plain ``env``
entries and the metric's resolved credential bindings are visible to it, so
secret material reaches the check as environment bindings and never appears
in the metric definition itself. Exit status 0 passes, anything else fails; the base
provider turns a timeout into an Error measurement and the process is killed.
"""
import asyncio
import contextlib
from typing import Dict

from src.canary.core.errors import ProviderError
from src.canary.models.analysis import AnalysisPhase, MetricResult
from src.canary.models.schemas import MetricSpec
from src.canary.providers.base import AnalysisProvider, InvocationContext, format_template

SANDBOX_PATH = "/usr/local/bin:/usr/bin:/bin"
MAX_MESSAGE_CHARS = 200


class JobProvider(AnalysisProvider):
    kind = "job"

    def build_env(self, metric: MetricSpec, context: InvocationContext) -> Dict[str, str]:
        env = {"PATH": SANDBOX_PATH}
        env.update(metric.provider.env)
        env.update(context.credentials.as_env())
        return env

    async def measure(self, metric: MetricSpec, context: InvocationContext) -> MetricResult:
        spec = metric.provider
        command = [format_template(part, context.args) for part in spec.command]

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                env=self.build_env(metric, context),
                cwd=spec.working_dir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProviderError(f"Cannot start check {command[0]!r}: {e.strerror or e}") from e

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise

        output = (stderr or stdout or b"").decode("utf-8", errors="replace").strip()
        last_line = output.splitlines()[-1] if output else ""
        message = context.credentials.redact(f"exit {process.returncode}: {last_line}")[:MAX_MESSAGE_CHARS]

        phase = AnalysisPhase.SUCCESSFUL if process.returncode == 0 else AnalysisPhase.FAILED
        return self.result(metric, phase, value=float(process.returncode), message=message)
