"""Shared plumbing for operations that run scripts against a vhost's node."""
from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import ExitStack, contextmanager

from ..config import MigrationConfig
from ..errors import PreconditionError
from ..locking import LockManager, LockTimeoutError
from ..remote.executor import ScriptExecutor
from ..remote.target import ExecutionResult, RemoteTarget
from ..scripts import ScriptLibrary
from .models import MigrationRecord
from .store import MigrationStore

TargetResolver = Callable[[str], RemoteTarget]


class VHostOperation:
    """Collaborators and helpers common to migrate, rollback and validate.

    *resolve_target* maps a node name to a :class:`RemoteTarget`; it is the
    caller's inventory lookup and is invoked once per operation.
    """

    def __init__(
        self,
        executor: ScriptExecutor,
        scripts: ScriptLibrary,
        store: MigrationStore,
        locks: LockManager,
        resolve_target: TargetResolver,
        *,
        config: MigrationConfig | None = None,
        timeout: float | None = None,
    ) -> None:
        """Wire the operation to its collaborators."""
        self.executor = executor
        self.scripts = scripts
        self.store = store
        self.locks = locks
        self.resolve_target = resolve_target
        self.config = config or scripts.migration
        self.timeout = timeout

    def _run(
        self,
        target: RemoteTarget,
        name: str,
        args: Sequence[object],
        *,
        dry_run: bool = False,
    ) -> ExecutionResult:
        rendered = self.scripts.render(name, args)
        return self.executor.execute_script(
            target,
            rendered.body,
            rendered.args,
            as_privileged=rendered.asset.privileged,
            dry_run=dry_run,
            timeout=self.timeout,
        )

    def _reload_args(self) -> list[object]:
        return ["true" if self.config.reload_php_fpm else "false", *self.config.reload_units]

    def _reload_services(self, record: MigrationRecord, target: RemoteTarget) -> ExecutionResult:
        # Vhosts on one node share nginx/php-fpm; reload one vhost at a time.
        with self.locks.node_lock(record.node):
            return self._run(target, "service_reload", self._reload_args())

    def _archive_root(self, record: MigrationRecord) -> str:
        return f"{record.layout.upath}/{self.config.archive_dir}"

    @contextmanager
    def _vhost_guard(self, vhost: str) -> Iterator[None]:
        with ExitStack() as stack:
            try:
                stack.enter_context(self.locks.mutate_vhosts([vhost], include_global=False))
            except LockTimeoutError as exc:
                raise PreconditionError(
                    f"Another operation holds the lock for {vhost}: {exc}"
                ) from exc
            except ValueError as exc:
                raise PreconditionError(f"Cannot lock vhost {vhost!r}: {exc}") from exc
            yield


__all__ = ["TargetResolver", "VHostOperation"]
