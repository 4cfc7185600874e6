# FILE: frs/service.py
from __future__ import annotations

"""
Operation facade for the inbound income endpoint and the admin endpoints.

Bodies are plain JSON-shaped mappings (camelCase keys); results are
JSON-ready dicts. Errors from the components propagate unchanged; the HTTP
layer maps `ValidationError` to 400 and `FRSError.to_dict()` into bodies.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from .errors import ValidationError
from .settlement import SettlementOrchestrator
from .sync import ChainEventSynchronizer

_log = logging.getLogger(__name__)


def _body(body: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    if body is None:
        return {}
    if not isinstance(body, Mapping):
        raise ValidationError("request body must be an object")
    return body


class SettlementService:
    def __init__(
        self,
        orchestrator: SettlementOrchestrator,
        synchronizer: Optional[ChainEventSynchronizer] = None,
    ):
        self.orchestrator = orchestrator
        self.synchronizer = synchronizer

    def _sync(self) -> ChainEventSynchronizer:
        if self.synchronizer is None:
            raise ValidationError("no investment contract configured")
        return self.synchronizer

    # ----- inbound -----

    async def submit_income(
        self, body: Mapping[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        result = await self.orchestrator.submit(_body(body), idempotency_key=idempotency_key)
        return result.to_dict()

    def get_submission(self, row_id: str) -> Optional[Dict[str, Any]]:
        rec = self.orchestrator.get(row_id)
        return rec.to_dict() if rec else None

    # ----- admin -----

    async def trigger_sync(self) -> Dict[str, Any]:
        result = await self._sync().sync_history()
        return {"ok": True, **result}

    async def trigger_resync(self, body: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        b = _body(body)
        result = await self._sync().resync(b.get("tokenId"), b.get("investor"))
        return {"ok": True, **result}

    def delete_investment(self, body: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        b = _body(body)
        token_id, investor = b.get("tokenId"), b.get("investor")
        missing = [k for k, v in (("tokenId", token_id), ("investor", investor)) if v in (None, "")]
        if missing:
            raise ValidationError("tokenId and investor are required", missing)
        deleted = self._sync().delete(token_id, investor)
        _log.info(
            "investment record deleted",
            extra={"token_id": str(token_id), "investor": investor, "deleted": deleted},
        )
        return {"ok": True, "deleted": deleted}

    def list_investments(self) -> List[Dict[str, Any]]:
        return [evt.to_dict() for evt in self._sync().list_events()]


__all__ = ["SettlementService"]
