from typing import Any, Dict, Optional, Protocol, Tuple, Union

from .models import JobInput, JobResult, ProgressEvent

Identity = Tuple[str, str]


class ConversionService(Protocol):
    def convert(self, job_input: JobInput) -> Union[JobResult, str]:
        """Convert one input. Blocking; raises TransientError or FatalError."""


class PersistenceSink(Protocol):
    def find(self, identity: Identity) -> Optional[Dict[str, Any]]:
        ...

    def insert(self, record: Dict[str, Any]) -> None:
        """Raise DuplicateRecord when the identity already exists."""

    def update(self, identity: Identity, record: Dict[str, Any]) -> None:
        ...


class ProgressReporter(Protocol):
    def notify(self, event: ProgressEvent) -> None:
        ...
