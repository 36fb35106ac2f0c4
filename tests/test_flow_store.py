"""Tests for the flow stores and the store factory."""
import asyncio
import json
import httpx
import pytest
from pathlib import Path

from app.core.config import Settings
from app.models.flow import GatherBlock, SayBlock
from app.services.flow_store import (
    FlowStore,
    InMemoryFlowStore,
    SupabaseFlowStore,
    binding_from_record,
    get_flow_store,
)

DEMO_FIXTURES = Path(__file__).resolve().parent.parent / "fixtures" / "demo_flows.json"

NUMBER_ROW = {
    "id": "num-1",
    "phone_number": "+15550001111",
    "status": "active",
    "call_flows": [
        {"id": "old", "flow_name": "Old", "flow_config": {"blocks": []}, "is_active": False},
        {
            "id": "live",
            "flow_name": "Live",
            "flow_config": json.dumps({"blocks": [{"id": "a", "type": "say", "config": {"text": "Hi"}}]}),
            "is_active": True,
        },
    ],
}


class TestBindings:
    def test_active_flow_is_selected(self):
        binding = binding_from_record(NUMBER_ROW)
        assert binding.phone_number == "+15550001111"
        assert binding.is_active
        assert binding.flow.id == "live"

    def test_no_active_flow(self):
        binding = binding_from_record({"phone_number": "+1", "call_flows": [NUMBER_ROW["call_flows"][0]]})
        assert binding.flow is None

    def test_status_other_than_active(self):
        assert not binding_from_record({"phone_number": "+1", "status": "suspended"}).is_active


class TestFlowStoreInterface:
    def test_store_must_implement_lookup_and_get_block(self):
        class LookupOnly(FlowStore):
            async def lookup(self, phone_number):
                return None

        with pytest.raises(TypeError):
            FlowStore()
        with pytest.raises(TypeError):
            LookupOnly()


class TestInMemoryFlowStore:
    def test_lookup_and_active_flow(self):
        store = InMemoryFlowStore.from_records([NUMBER_ROW])

        assert asyncio.run(store.is_number_active("+15550001111"))
        assert not asyncio.run(store.is_number_active("+15550009999"))
        assert asyncio.run(store.get_active_flow_for_number("+15550001111")).id == "live"
        assert asyncio.run(store.get_active_flow_for_number("+15550009999")) is None

    def test_get_block(self):
        store = InMemoryFlowStore.from_records([NUMBER_ROW])

        assert isinstance(asyncio.run(store.get_block("live", "a")), SayBlock)
        assert asyncio.run(store.get_block("live", "zzz")) is None
        assert asyncio.run(store.get_block("nope", "a")) is None

    def test_demo_fixtures(self):
        store = InMemoryFlowStore.from_file(str(DEMO_FIXTURES))

        flow = asyncio.run(store.get_active_flow_for_number("+15550001111"))
        assert flow.id == "demo-main"
        assert isinstance(flow.get_block("menu"), GatherBlock)
        assert not asyncio.run(store.is_number_active("+15550002222"))

    def test_from_file(self, tmp_path):
        path = tmp_path / "flows.json"
        path.write_text(json.dumps([NUMBER_ROW]))

        store = InMemoryFlowStore.from_file(str(path))
        assert asyncio.run(store.lookup("+15550001111")).flow.name == "Live"


class TestSupabaseFlowStore:
    def make_store(self, handler):
        return SupabaseFlowStore(
            "https://project.supabase.co/", "service-key", transport=httpx.MockTransport(handler)
        )

    def test_lookup_queries_numbers_with_flows(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["apikey"] = request.headers.get("apikey")
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=[NUMBER_ROW])

        binding = asyncio.run(self.make_store(handler).lookup("+15550001111"))

        assert binding.flow.id == "live"
        assert seen["path"] == "/rest/v1/twilio_numbers"
        assert seen["params"]["phone_number"] == "eq.+15550001111"
        assert seen["params"]["status"] == "eq.active"
        assert seen["params"]["select"] == SupabaseFlowStore.NUMBER_SELECT
        assert seen["apikey"] == "service-key"
        assert seen["auth"] == "Bearer service-key"

    def test_lookup_no_rows(self):
        store = self.make_store(lambda request: httpx.Response(200, json=[]))
        assert asyncio.run(store.lookup("+15550001111")) is None

    def test_get_block(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/rest/v1/call_flows"
            assert request.url.params["id"] == "eq.live"
            return httpx.Response(200, json=[NUMBER_ROW["call_flows"][1]])

        block = asyncio.run(self.make_store(handler).get_block("live", "a"))
        assert block.config.text == "Hi"

    def test_http_errors_propagate(self):
        store = self.make_store(lambda request: httpx.Response(500, json={"message": "boom"}))
        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(store.lookup("+15550001111"))


class TestFlowStoreFactory:
    def test_memory_store_is_reused(self):
        settings = Settings(_env_file=None, FLOW_STORE_BACKEND="memory")
        store = get_flow_store(settings)

        assert isinstance(store, InMemoryFlowStore)
        assert get_flow_store(settings) is store

    def test_memory_store_from_fixtures(self):
        settings = Settings(_env_file=None, FLOW_STORE_BACKEND="memory", FLOW_FIXTURES_PATH=str(DEMO_FIXTURES))
        store = get_flow_store(settings)

        assert asyncio.run(store.is_number_active("+15550001111"))

    def test_supabase_store(self):
        settings = Settings(
            _env_file=None,
            FLOW_STORE_BACKEND="supabase",
            SUPABASE_URL="https://project.supabase.co",
            SUPABASE_SERVICE_KEY="service-key",
        )
        assert isinstance(get_flow_store(settings), SupabaseFlowStore)

    def test_supabase_requires_credentials(self):
        settings = Settings(_env_file=None, FLOW_STORE_BACKEND="supabase", SUPABASE_URL=None, SUPABASE_SERVICE_KEY=None)
        with pytest.raises(ValueError):
            get_flow_store(settings)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            get_flow_store(Settings(_env_file=None, FLOW_STORE_BACKEND="redis"))
