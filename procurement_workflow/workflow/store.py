from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import ContextManager, List

from procurement_workflow.workflow.model import Request, RequestStatus


class RequestStore(ABC):
    """Persistence port for requests.

    ``save`` is a compare-and-swap on ``previous.version``: when another writer got there
    first it raises ``ConcurrentModificationError`` and writes nothing. Status history and
    approval history are append-only; ``save`` only ever adds entries.
    """

    @abstractmethod
    def transaction(self) -> ContextManager[object]:
        raise NotImplementedError

    @abstractmethod
    def load(self, request_id: str) -> Request | None:
        raise NotImplementedError

    @abstractmethod
    def create(self, request: Request) -> Request:
        raise NotImplementedError

    @abstractmethod
    def save(self, previous: Request, updated: Request) -> Request:
        raise NotImplementedError

    @abstractmethod
    def list_by_status(self, status: RequestStatus) -> List[Request]:
        raise NotImplementedError

    @abstractmethod
    def next_number(self, now: datetime) -> str:
        raise NotImplementedError
