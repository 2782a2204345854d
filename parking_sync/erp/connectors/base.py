from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

@dataclass(frozen=True)
class ErpSession:
    """Opaque session handle returned by a successful login."""
    client_id: str

@dataclass
class RemoteResult:
    """
    Raw read result, before normalization.
    `rows` is either a list of positional arrays (zip with `keys`) or a list
    of field maps, depending on the remote service that produced it.
    """
    rows: List[Union[List[Any], Dict[str, Any]]] = field(default_factory=list)
    keys: List[str] = field(default_factory=list)
    count: Optional[int] = None

class ErpConnector(ABC):
    """
    Provider-agnostic ERP read interface used by the sync orchestrator.
    """

    @abstractmethod
    async def authenticate(self) -> ErpSession:
        """Log in and return a session handle. Raises AuthError."""
        ...

    @abstractmethod
    async def fetch_table(
        self,
        session: ErpSession,
        table: str,
        fields: List[str],
        filter_expression: str = "1=1",
        filters: Optional[str] = None,
    ) -> RemoteResult:
        """Generic filtered table read. Raises RemoteError."""
        ...

    @abstractmethod
    async def fetch_named_query(
        self,
        session: ErpSession,
        query_id: str,
        since: Optional[str] = None,
    ) -> RemoteResult:
        """Pre-compiled query taking one changed-since timestamp. Raises RemoteError."""
        ...

    async def aclose(self) -> None:
        return None
