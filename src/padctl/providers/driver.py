"""Command driver bridging padctl to provider-specific tooling.

Cloud providers do not talk to vendor APIs from inside padctl. Each verb is
delegated to an external driver executable::

    <driver_bin> <verb> <instance>

The request is written to the driver's stdin as a JSON object and the driver
answers with a JSON object on stdout. A non-zero exit status, a missing
binary or an undecodable reply is reported as :class:`ProviderError`. While
waiting, the cancellation token is polled; on cancellation the child is
terminated and :class:`OperationInterrupted` is raised without assuming the
call succeeded.
"""
from __future__ import annotations

import json
import logging
import subprocess
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..cancel import CancelToken
from ..errors import OperationInterrupted, ProviderError
from ..state.model import thaw

_LOG = logging.getLogger(__name__)

VERBS = ("create", "update", "destroy", "start", "stop", "configure", "status")


@dataclass(slots=True)
class CommandDriver:
    """Invoke ``driver_bin`` for one provider."""

    provider: str
    driver_bin: str
    timeout: float | None = None
    poll_interval: float = 0.2
    terminate_grace: float = 5.0

    def call(
        self,
        verb: str,
        instance: str,
        payload: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> dict[str, Any]:
        """Run *verb* for *instance* and return the decoded JSON reply."""
        if verb not in VERBS:
            raise ValueError(f"Unknown driver verb '{verb}'.")
        args = [self.driver_bin, verb, instance]
        if cancel is not None and cancel.cancelled:
            raise OperationInterrupted(instance, verb)
        request = json.dumps(thaw(payload))
        _LOG.debug("Running %s", " ".join(args))
        try:
            process = subprocess.Popen(  # noqa: S603
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as exc:
            raise self._error(verb, instance, f"{self.driver_bin} not found: {exc}", exc) from exc
        except OSError as exc:
            raise self._error(verb, instance, f"cannot run {self.driver_bin}: {exc}", exc) from exc

        stdout, stderr = self._communicate(process, request, verb, instance, cancel)
        if process.returncode != 0:
            message = (stderr or "").strip() or (stdout or "").strip() or "no output"
            raise self._error(
                verb,
                instance,
                f"{self.driver_bin} {verb} failed (exit {process.returncode}): {message}",
                context={"returncode": process.returncode},
            )
        return self._decode(stdout, verb, instance)

    # ------------------------------------------------------------------
    def _communicate(
        self,
        process: subprocess.Popen[str],
        request: str,
        verb: str,
        instance: str,
        cancel: CancelToken | None,
    ) -> tuple[str, str]:
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while True:
            try:
                stdout, stderr = process.communicate(request, timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    self._terminate(process)
                    raise OperationInterrupted(instance, verb) from None
                if deadline is not None and time.monotonic() >= deadline:
                    self._terminate(process)
                    raise self._error(
                        verb,
                        instance,
                        f"{self.driver_bin} {verb} timed out after {self.timeout:.0f}s",
                    ) from None
                continue
            if cancel is not None and cancel.cancelled:
                # The driver finished, but the caller no longer waits for the result.
                raise OperationInterrupted(instance, verb)
            return stdout or "", stderr or ""

    def _terminate(self, process: subprocess.Popen[str]) -> None:
        process.terminate()
        try:
            process.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def _decode(self, stdout: str, verb: str, instance: str) -> dict[str, Any]:
        text = stdout.strip()
        if not text:
            return {}
        try:
            reply = json.loads(text)
        except json.JSONDecodeError as exc:
            raise self._error(
                verb, instance, f"{self.driver_bin} {verb} returned invalid JSON: {exc}", exc
            ) from exc
        if not isinstance(reply, dict):
            raise self._error(verb, instance, f"{self.driver_bin} {verb} must reply with an object")
        return reply

    def _error(
        self,
        verb: str,
        instance: str,
        message: str,
        cause: BaseException | None = None,
        *,
        context: Mapping[str, object] | None = None,
    ) -> ProviderError:
        merged: dict[str, object] = {"instance": instance, "driver_bin": self.driver_bin}
        merged.update(context or {})
        return ProviderError(
            message,
            provider=self.provider,
            operation=verb,
            context=merged,
            cause=cause,
        )


class DriverProvisioner:
    """Provisioner delegating every verb to a :class:`CommandDriver`."""

    def __init__(self, instance_name: str, driver: CommandDriver) -> None:
        """Bind the provisioner to *instance_name*."""
        self.instance_name = instance_name
        self.driver = driver

    def create(
        self,
        provision_input: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> Mapping[str, Any]:
        """Create infrastructure and return the provision output."""
        reply = self.driver.call(
            "create", self.instance_name, {"input": provision_input}, cancel=cancel
        )
        return _expect_output(self.driver, "create", self.instance_name, reply)

    def update(
        self,
        provision_input: Mapping[str, Any],
        prior_output: Mapping[str, Any] | None,
        *,
        cancel: CancelToken | None = None,
    ) -> Mapping[str, Any]:
        """Reconcile infrastructure and return the new provision output."""
        reply = self.driver.call(
            "update",
            self.instance_name,
            {"input": provision_input, "output": prior_output},
            cancel=cancel,
        )
        return _expect_output(self.driver, "update", self.instance_name, reply)

    def destroy(
        self,
        output: Mapping[str, Any] | None,
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        """Release remote resources."""
        self.driver.call("destroy", self.instance_name, {"output": output}, cancel=cancel)


class DriverRunner:
    """Runner delegating every verb to a :class:`CommandDriver`."""

    def __init__(self, instance_name: str, driver: CommandDriver) -> None:
        """Bind the runner to *instance_name*."""
        self.instance_name = instance_name
        self.driver = driver

    def start(self, output: Mapping[str, Any], *, cancel: CancelToken | None = None) -> None:
        """Start the instance server."""
        self.driver.call("start", self.instance_name, {"output": output}, cancel=cancel)

    def stop(self, output: Mapping[str, Any], *, cancel: CancelToken | None = None) -> None:
        """Stop the instance server."""
        self.driver.call("stop", self.instance_name, {"output": output}, cancel=cancel)

    def apply_configuration(
        self,
        configuration: Mapping[str, Any],
        output: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        """Push *configuration* to the instance."""
        self.driver.call(
            "configure",
            self.instance_name,
            {"configuration": configuration, "output": output},
            cancel=cancel,
        )

    def status(self, output: Mapping[str, Any]) -> str:
        """Return the server state reported by the driver."""
        reply = self.driver.call("status", self.instance_name, {"output": output})
        status = reply.get("status")
        return status if isinstance(status, str) else "unknown"


def _expect_output(
    driver: CommandDriver,
    verb: str,
    instance: str,
    reply: Mapping[str, Any],
) -> Mapping[str, Any]:
    output = reply.get("output")
    if not isinstance(output, Mapping):
        raise ProviderError(
            f"{driver.driver_bin} {verb} did not return a provision output.",
            provider=driver.provider,
            operation=verb,
            context={"instance": instance, "reply_keys": sorted(reply)},
        )
    return output


__all__ = ["CommandDriver", "DriverProvisioner", "DriverRunner", "VERBS"]
