"""Detached per-member worker that runs one CLI to a terminal state."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_council.orchestrator.backend import (
    BackendRunError,
    CliAgentBackend,
    MemberBackend,
    MemberRunRequest,
    MemberRunResult,
    split_command,
)
from agent_council.orchestrator.backend.cli_backend import append_diagnostic, signal_name
from agent_council.orchestrator.contracts import merge_status, read_text_if_exists
from agent_council.orchestrator.failure_classifier import detect_rate_limit
from agent_council.orchestrator.models import MemberState, utc_now_iso
from agent_council.orchestrator.workdir import JobPaths, MemberPaths

logger = logging.getLogger(__name__)

_TERMINATION_SIGNALS = frozenset({int(signal.SIGTERM), int(getattr(signal, "SIGKILL", 9))})


@dataclass(slots=True)
class WorkerOptions:
    """Launch arguments of one member worker."""

    job_dir: Path
    member: str
    safe_member: str
    command: str
    fallback: str | None = None
    timeout_seconds: float | None = None
    use_member_prompt: bool = False


class MemberWorker:
    """Runs a member command, with at most one rate-limit fallback retry."""

    def __init__(self, options: WorkerOptions, *, backend: MemberBackend | None = None) -> None:
        self.options = options
        self.backend = backend or CliAgentBackend()
        self.paths: MemberPaths = JobPaths(options.job_dir).member(options.safe_member)
        self.history: list[dict[str, Any]] = []

    def run(self) -> str:
        """Execute the member and return its final state."""

        self.paths.directory.mkdir(parents=True, exist_ok=True)
        prompt = self._load_prompt()
        command = self.options.command

        try:
            split_command(command)
        except BackendRunError:
            return self._write(
                state=MemberState.ERROR,
                message="Invalid command string",
                finishedAt=utc_now_iso(),
                command=command,
            )

        self._truncate_outputs()
        started_at = utc_now_iso()
        self._write(state=MemberState.RUNNING, startedAt=started_at, command=command, pid=None)
        try:
            result = self._execute(command, prompt, started_at=started_at)
        except BackendRunError as error:
            return self._write(
                state=MemberState.MISSING_CLI if error.missing_executable else MemberState.ERROR,
                message=str(error),
                finishedAt=utc_now_iso(),
                startedAt=started_at,
                command=command,
                exitCode=None,
            )

        timed_out = result.timer_fired and result.signal_number in _TERMINATION_SIGNALS
        canceled = not timed_out and result.signal_number == int(signal.SIGTERM)

        if not timed_out and not canceled and result.exit_code != 0 and self.options.fallback:
            stderr = read_text_if_exists(self.paths.error_path)
            match = detect_rate_limit(stderr)
            if match is not None:
                logger.info(
                    "Rate limit detected for %s, retrying with fallback",
                    self.options.member,
                    extra={"rate_limit": match.to_details(member=self.options.member)},
                )
                return self._retry_with_fallback(prompt, original=result)

        if timed_out:
            state, message = MemberState.TIMED_OUT, f"Timed out after {self._timeout_label()}s"
        elif canceled:
            state, message = MemberState.CANCELED, "Canceled"
        elif result.exit_code == 0:
            state, message = MemberState.DONE, None
        else:
            state, message = MemberState.ERROR, _failure_message(result)
        return self._write(
            state=state,
            message=message,
            finishedAt=utc_now_iso(),
            startedAt=started_at,
            command=command,
            exitCode=result.exit_code,
            signal=signal_name(result.signal_number),
            pid=result.pid,
        )

    def _retry_with_fallback(self, prompt: str, *, original: MemberRunResult) -> str:
        command = self.options.command
        fallback = self.options.fallback or ""
        self._write(
            state=MemberState.RETRYING,
            message="Rate limit detected, retrying with fallback command",
            originalCommand=command,
            fallbackCommand=fallback,
            exitCode=original.exit_code,
            retryAt=utc_now_iso(),
            pid=None,
        )
        self._truncate_outputs()

        fallback_fields = {
            "command": fallback,
            "originalCommand": command,
            "fallbackCommand": fallback,
            "usedFallback": True,
        }
        started_at = utc_now_iso()
        self._write(
            state=MemberState.RUNNING,
            message="Running with fallback command",
            startedAt=started_at,
            pid=None,
            **fallback_fields,
        )
        try:
            result = self._execute(fallback, prompt, started_at=started_at, extra=fallback_fields)
        except BackendRunError as error:
            return self._write(
                state=MemberState.ERROR,
                message=f"Fallback: {error}",
                finishedAt=utc_now_iso(),
                startedAt=started_at,
                exitCode=None,
                **fallback_fields,
            )

        if result.timer_fired and result.signal_number in _TERMINATION_SIGNALS:
            state = MemberState.TIMED_OUT
            message: str | None = f"Fallback timed out after {self._timeout_label()}s"
        elif result.exit_code == 0:
            state, message = MemberState.DONE, "Completed with fallback command"
        else:
            state, message = MemberState.ERROR, f"Fallback: {_failure_message(result)}"
        return self._write(
            state=state,
            message=message,
            finishedAt=utc_now_iso(),
            startedAt=started_at,
            exitCode=result.exit_code,
            signal=signal_name(result.signal_number),
            pid=result.pid,
            **fallback_fields,
        )

    def _execute(
        self,
        command: str,
        prompt: str,
        *,
        started_at: str,
        extra: dict[str, Any] | None = None,
    ) -> MemberRunResult:
        fields = dict(extra or {})
        fields.setdefault("command", command)

        def on_started(pid: int) -> None:
            self._write(state=MemberState.RUNNING, startedAt=started_at, pid=pid, **fields)

        request = MemberRunRequest(
            command=command,
            prompt=prompt,
            stdout_path=self.paths.output_path,
            stderr_path=self.paths.error_path,
            timeout_seconds=self.options.timeout_seconds,
            on_started=on_started,
        )
        return self.backend.run(request)

    def _load_prompt(self) -> str:
        if self.options.use_member_prompt and self.paths.prompt_path.exists():
            return read_text_if_exists(self.paths.prompt_path)
        return read_text_if_exists(JobPaths(self.options.job_dir).prompt_path)

    def _truncate_outputs(self) -> None:
        for path in (self.paths.error_path, self.paths.output_path):
            try:
                path.write_bytes(b"")
            except OSError as error:
                append_diagnostic(self.paths.error_path, f"output stream error: {error}")

    def _timeout_label(self) -> str:
        timeout = self.options.timeout_seconds or 0
        return f"{timeout:g}"

    def _write(self, *, state: MemberState, **fields: Any) -> str:
        record: dict[str, Any] = {"member": self.options.member, "state": state.value}
        record.update(fields)
        try:
            merged = merge_status(self.paths.status_path, record)
        except OSError as error:
            logger.warning(
                "Could not persist %s status for %s: %s",
                state.value,
                self.options.member,
                error,
            )
            merged = record
        self.history.append(merged)
        return state.value


def _failure_message(result: MemberRunResult) -> str:
    if result.signal_number is not None:
        return f"Terminated by signal {signal_name(result.signal_number)}"
    return f"Exited with code {result.exit_code}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-council-worker")
    parser.add_argument("--job-dir", required=True)
    parser.add_argument("--member", required=True)
    parser.add_argument("--safe-member", required=True)
    parser.add_argument("--command", required=True)
    parser.add_argument("--fallback", default=None)
    parser.add_argument("--timeout", type=float, default=None)
    parser.add_argument("--use-member-prompt", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Worker process entry point; exit code 0 iff the member finished ``done``."""

    args = build_parser().parse_args(argv)
    options = WorkerOptions(
        job_dir=Path(args.job_dir),
        member=args.member,
        safe_member=args.safe_member,
        command=args.command,
        fallback=args.fallback or None,
        timeout_seconds=args.timeout if args.timeout and args.timeout > 0 else None,
        use_member_prompt=args.use_member_prompt,
    )
    final_state = MemberWorker(options).run()
    return 0 if final_state == MemberState.DONE.value else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
