"""Execution state for template deployments.

Tracks per-resource status (pending, running, completed, failed, skipped,
cancelled), the append-only runtime attribute table filled by the provider,
and the evaluated outputs. State is persisted to disk so that a partial run
can be inspected and remediated.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

from template_opr.evaluator import redact

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {'completed', 'failed', 'skipped', 'cancelled'}


class RuntimeAttributes(Mapping[str, dict]):
    """Append-only table of runtime attributes keyed by resource symbol.

    Recording the same resource twice within one pass is an error.
    """

    def __init__(self, initial: Optional[Mapping[str, dict]] = None):
        self._data: dict[str, dict] = dict(initial or {})

    def record(self, symbol: str, attributes: dict) -> None:
        if symbol in self._data:
            raise ValueError(f"Runtime attributes for '{symbol}' already recorded")
        self._data[symbol] = dict(attributes)

    def __getitem__(self, symbol: str) -> dict:
        return self._data[symbol]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def to_dict(self) -> dict[str, dict]:
        return {k: dict(v) for k, v in self._data.items()}


@dataclass
class ResourceState:
    """Per-resource execution state.

    Attributes:
        symbol: Symbolic name (matches the template key)
        name: Fully-qualified resource name
        type: Resource type@apiVersion
        status: pending, running, completed, failed, skipped or cancelled
        started_at: Timestamp when materialization started
        completed_at: Timestamp when it finished (any terminal status)
        error: Error message if failed
    """
    symbol: str
    name: str = ''
    type: str = ''
    status: str = 'pending'
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def start(self) -> None:
        self.status = 'running'
        self.started_at = time.time()

    def complete(self) -> None:
        self.status = 'completed'
        self.completed_at = time.time()

    def fail(self, error: str) -> None:
        self.status = 'failed'
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.status = 'skipped'
        self.error = reason

    def cancel(self) -> None:
        self.status = 'cancelled'
        self.completed_at = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'symbol': self.symbol,
            'status': self.status,
        }
        if self.name:
            d['name'] = self.name
        if self.type:
            d['type'] = self.type
        if self.started_at is not None:
            d['started_at'] = self.started_at
        if self.completed_at is not None:
            d['completed_at'] = self.completed_at
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceState':
        return cls(
            symbol=data['symbol'],
            name=data.get('name', ''),
            type=data.get('type', ''),
            status=data.get('status', 'pending'),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            error=data.get('error'),
        )


class ExecutionState:
    """Deployment-level execution state with save/load.

    State is persisted to {state_dir}/{template}/execution.json. Values in
    `secrets` are redacted from runtime attributes and outputs whenever the
    state is rendered.
    """

    def __init__(self, template_name: str, state_dir: Optional[Path] = None,
                 secrets: Optional[list] = None):
        self.template_name = template_name
        self.state_dir = Path(state_dir) if state_dir else Path.cwd() / '.states'
        self.secrets: list = list(secrets or [])
        self._resources: dict[str, ResourceState] = {}
        self.runtime = RuntimeAttributes()
        self.outputs: dict[str, Any] = {}
        self.error: Optional[str] = None
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    def add_resource(self, symbol: str, name: str = '', type: str = '') -> ResourceState:
        """Register a resource for tracking."""
        state = ResourceState(symbol=symbol, name=name, type=type)
        self._resources[symbol] = state
        return state

    def get_resource(self, symbol: str) -> ResourceState:
        """Get resource state by symbol.

        Raises:
            KeyError: If resource not registered
        """
        return self._resources[symbol]

    @property
    def resources(self) -> dict[str, ResourceState]:
        return dict(self._resources)

    @property
    def materialized(self) -> list[str]:
        """Symbols of completed resources, in completion order."""
        return list(self.runtime)

    @property
    def pending(self) -> list[str]:
        return [s for s, r in self._resources.items() if r.status not in TERMINAL_STATUSES]

    def skip_remaining(self, reason: str) -> list[str]:
        """Mark every resource that has not started as skipped."""
        skipped = []
        for symbol, rs in self._resources.items():
            if rs.status == 'pending':
                rs.skip(reason)
                skipped.append(symbol)
        return skipped

    def cancel_remaining(self) -> list[str]:
        """Mark every resource that has not finished as cancelled."""
        cancelled = []
        for symbol, rs in self._resources.items():
            if rs.status in ('pending', 'running'):
                rs.cancel()
                cancelled.append(symbol)
        return cancelled

    @property
    def success(self) -> bool:
        return self.error is None and all(r.status == 'completed' for r in self._resources.values())

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def to_dict(self) -> dict:
        """Render state with secret values redacted."""
        return {
            'template': self.template_name,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'error': redact(self.error, self.secrets),
            'resources': {s: redact(r.to_dict(), self.secrets) for s, r in self._resources.items()},
            'runtime': redact(self.runtime.to_dict(), self.secrets),
            'outputs': redact(self.outputs, self.secrets),
        }

    def default_path(self) -> Path:
        return self.state_dir / self.template_name / 'execution.json'

    def save(self, path: Optional[Path] = None) -> Path:
        """Save state to a JSON file.

        Args:
            path: Optional override path. Default: {state_dir}/{template}/execution.json

        Returns:
            Path where state was saved
        """
        if path is None:
            path = self.default_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        logger.debug(f"Saved execution state to {path}")
        return path

    @classmethod
    def load(cls, template_name: str, state_dir: Optional[Path] = None,
             path: Optional[Path] = None) -> 'ExecutionState':
        """Load state from a JSON file.

        Raises:
            FileNotFoundError: If the state file doesn't exist
        """
        state = cls(template_name, state_dir)
        if path is None:
            path = state.default_path()

        with open(path, encoding='utf-8') as f:
            data = json.load(f)

        state.started_at = data.get('started_at')
        state.completed_at = data.get('completed_at')
        state.error = data.get('error')
        state.outputs = data.get('outputs', {})
        state.runtime = RuntimeAttributes(data.get('runtime', {}))
        for symbol, rdata in data.get('resources', {}).items():
            state._resources[symbol] = ResourceState.from_dict(rdata)

        logger.debug(f"Loaded execution state from {path}")
        return state
