from __future__ import annotations

from typing import Callable, Iterable, Mapping, Sequence
import logging
import os
import subprocess

from .models import RepositoryTarget

logger = logging.getLogger(__name__)

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


class ResticCommandError(RuntimeError):
    def __init__(self, *, command: str, returncode: int | None, output: str) -> None:
        normalized_output = output.strip() or "no output"
        status = f"exit status {returncode}" if returncode is not None else "could not be started"
        super().__init__(f"restic {command} failed ({status}): {normalized_output}")
        self.command = command
        self.returncode = returncode
        self.output = output


class ResticClient:
    """Runs restic against the per-node repository of a :class:`RepositoryTarget`.

    Credentials travel through the process environment only; argument lists
    never contain secrets and are safe to log.
    """

    def __init__(
        self,
        *,
        target: RepositoryTarget,
        binary: str = "restic",
        runner: Runner = subprocess.run,
        base_environment: Mapping[str, str] | None = None,
    ) -> None:
        self.target = target
        self.binary = binary
        self.runner = runner
        self.base_environment = base_environment

    @property
    def repository(self) -> str:
        return self.target.repository_url

    def environment(self) -> dict[str, str]:
        environment = dict(os.environ if self.base_environment is None else self.base_environment)
        environment.update(self.target.environment())
        return environment

    def init(self) -> str:
        return self._run(["init", "--repo", self.repository])

    def check(self) -> str:
        return self._run(["check", "--repo", self.repository])

    def ensure_repository(self) -> None:
        try:
            self.check()
            logger.info("Repository %s is ready", self.repository)
            return
        except ResticCommandError as error:
            logger.info("Repository check failed, trying to initialize: %s", error)
        self.init()
        logger.info("Initialized repository %s", self.repository)

    def backup(
        self,
        paths: Sequence[str],
        *,
        excludes: Iterable[str] = (),
        tags: Iterable[str] = (),
    ) -> str:
        if not paths:
            raise ValueError("backup requires at least one path")

        args = ["backup", "--repo", self.repository, "--host", self.target.host]
        for tag in tags:
            args.extend(["--tag", tag])
        for pattern in excludes:
            if pattern:
                args.extend(["--exclude", pattern])
        args.extend(paths)
        return self._run(args)

    def forget(self, keep_within: Sequence[str]) -> str | None:
        """Apply ``--keep-within`` rules and prune; no-op when there are none."""
        windows = [window for window in keep_within if window]
        if not windows:
            return None

        args = ["forget", "--repo", self.repository, "--prune"]
        for window in windows:
            args.extend(["--keep-within", window])
        return self._run(args)

    def passthrough(self, args: Sequence[str]) -> int:
        """Run an arbitrary restic command attached to the current terminal."""
        environment = self.environment()
        environment["RESTIC_REPOSITORY"] = self.repository
        logger.debug("Executing command: %s %s", self.binary, " ".join(args))
        try:
            completed = self.runner([self.binary, *args], check=False, env=environment)
        except OSError as error:
            raise ResticCommandError(command=args[0] if args else "", returncode=None, output=str(error)) from error
        return completed.returncode

    def _run(self, args: list[str]) -> str:
        logger.debug("Executing command: %s %s", self.binary, " ".join(args))
        try:
            completed = self.runner(
                [self.binary, *args],
                check=False,
                capture_output=True,
                text=True,
                env=self.environment(),
            )
        except OSError as error:
            raise ResticCommandError(command=args[0], returncode=None, output=str(error)) from error

        output = _combined_output(completed)
        if completed.returncode != 0:
            raise ResticCommandError(command=args[0], returncode=completed.returncode, output=output)
        return output


def _combined_output(completed: subprocess.CompletedProcess[str]) -> str:
    parts = [part.strip() for part in (completed.stdout, completed.stderr) if part and part.strip()]
    return "\n".join(parts)
