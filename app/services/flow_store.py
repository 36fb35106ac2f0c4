import httpx
from abc import ABC, abstractmethod
import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from app.core.config import get_settings, Settings
from app.core.logger import logger
from app.models.flow import Flow, FlowBlock

class NumberBinding(BaseModel):
    """A phone number and the flow currently bound to it."""
    phone_number: str
    is_active: bool = True
    flow: Optional[Flow] = None

def binding_from_record(record: Dict[str, Any]) -> NumberBinding:
    """
    Build a binding from a `twilio_numbers` row with its nested `call_flows`.

    Only the flow flagged active is kept; activating a new flow is the
    store's job, so if several are flagged the first one wins.
    """
    active_flow = None
    for flow_record in record.get("call_flows") or []:
        if flow_record.get("is_active"):
            active_flow = Flow.from_record(flow_record)
            break

    return NumberBinding(
        phone_number=record.get("phone_number") or "",
        is_active=(record.get("status") or "active") == "active",
        flow=active_flow,
    )

class FlowStore(ABC):
    """Read access to number bindings and their call flows."""

    @abstractmethod
    async def lookup(self, phone_number: str) -> Optional[NumberBinding]:
        raise NotImplementedError

    async def is_number_active(self, phone_number: str) -> bool:
        binding = await self.lookup(phone_number)
        return binding is not None and binding.is_active

    async def get_active_flow_for_number(self, phone_number: str) -> Optional[Flow]:
        binding = await self.lookup(phone_number)
        if binding is None or not binding.is_active:
            return None
        if binding.flow is None or not binding.flow.is_active:
            return None
        return binding.flow

    @abstractmethod
    async def get_block(self, flow_id: str, block_id: str) -> Optional[FlowBlock]:
        raise NotImplementedError

class InMemoryFlowStore(FlowStore):
    """Flow store kept in process memory, optionally seeded from a JSON fixtures file."""

    def __init__(self):
        self._numbers: Dict[str, NumberBinding] = {}

    def add_number(self, phone_number: str, is_active: bool = True) -> NumberBinding:
        binding = NumberBinding(phone_number=phone_number, is_active=is_active)
        self._numbers[phone_number] = binding
        return binding

    def add_flow(self, phone_number: str, flow: Flow) -> None:
        """Bind a flow to a number, registering the number if needed."""
        binding = self._numbers.get(phone_number) or self.add_number(phone_number)
        binding.flow = flow

    async def lookup(self, phone_number: str) -> Optional[NumberBinding]:
        return self._numbers.get(phone_number)

    async def get_block(self, flow_id: str, block_id: str) -> Optional[FlowBlock]:
        for binding in self._numbers.values():
            if binding.flow is not None and binding.flow.id == flow_id:
                return binding.flow.get_block(block_id)
        return None

    @classmethod
    def from_records(cls, records: List[Dict[str, Any]]) -> "InMemoryFlowStore":
        store = cls()
        for record in records:
            binding = binding_from_record(record)
            store._numbers[binding.phone_number] = binding
        return store

    @classmethod
    def from_file(cls, path: str) -> "InMemoryFlowStore":
        records = json.loads(Path(path).read_text())
        logger.info(f"Loaded {len(records)} number(s) from {path}")
        return cls.from_records(records)

class SupabaseFlowStore(FlowStore):
    """Flow store backed by the Supabase REST API (PostgREST)."""

    NUMBER_SELECT = "*,call_flows(id,flow_name,flow_config,is_active)"

    def __init__(
        self,
        url: str,
        service_key: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Accept": "application/json",
        }

    async def _get(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        logger.info(f"Store request: GET {table}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(f"{self.url}/rest/v1/{table}", params=params, headers=self._headers())
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            logger.error(f"Store error: {table} request failed: {str(e)}")
            raise

    async def lookup(self, phone_number: str) -> Optional[NumberBinding]:
        """
        Find an active number and its flows.

        Args:
            phone_number: The called number, E.164

        Returns:
            The number binding, or None if no active number matches
        """
        rows = await self._get(
            "twilio_numbers",
            {
                "select": self.NUMBER_SELECT,
                "phone_number": f"eq.{phone_number}",
                "status": "eq.active",
                "limit": "1",
            },
        )
        if not rows:
            return None
        return binding_from_record(rows[0])

    async def get_block(self, flow_id: str, block_id: str) -> Optional[FlowBlock]:
        rows = await self._get(
            "call_flows",
            {"select": "id,flow_name,flow_config,is_active", "id": f"eq.{flow_id}", "limit": "1"},
        )
        if not rows:
            return None
        return Flow.from_record(rows[0]).get_block(block_id)

@lru_cache()
def _build_flow_store(backend: str, fixtures_path: Optional[str], supabase_url: Optional[str], supabase_key: Optional[str], timeout: float) -> FlowStore:
    if backend == "supabase":
        if not supabase_url or not supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required for the supabase flow store")
        return SupabaseFlowStore(supabase_url, supabase_key, timeout=timeout)
    if backend == "memory":
        if fixtures_path:
            return InMemoryFlowStore.from_file(fixtures_path)
        return InMemoryFlowStore()
    raise ValueError(f"Unknown flow store backend: {backend}")

def get_flow_store(settings: Optional[Settings] = None) -> FlowStore:
    """Return the configured flow store (one instance per configuration)."""
    settings = settings or get_settings()
    return _build_flow_store(
        settings.FLOW_STORE_BACKEND,
        settings.FLOW_FIXTURES_PATH,
        settings.SUPABASE_URL,
        settings.SUPABASE_SERVICE_KEY,
        settings.STORE_TIMEOUT_SECONDS,
    )
