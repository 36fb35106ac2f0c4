"""Shared test fixtures for the call flow service."""
import pytest
import xml.etree.ElementTree as ET

from app.core.config import Settings
from app.models.call import TurnContext
from app.models.flow import Flow
from app.services.call_dispatcher import CallDispatcher
from app.services.flow_compiler import FlowCompiler
from app.services.flow_store import InMemoryFlowStore
from app.services.gather_service import GatherService

BUSINESS_NUMBER = "+15550001111"
CALLER_NUMBER = "+15559998888"


def make_flow(blocks, flow_id="flow-1", **config):
    """Build a flow the way it is stored: a flow_config with a blocks list."""
    return Flow.from_config(flow_id, {"blocks": blocks, **config}, name="Test flow")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        PUBLIC_BASE_URL="",
        DEFAULT_VOICE="alice",
        GATHER_TIMEOUT_SECONDS=10,
        CONTINUATION_SECRET=None,
        VALIDATE_TWILIO_SIGNATURE=False,
        FLOW_STORE_BACKEND="memory",
    )


@pytest.fixture
def compiler(settings) -> FlowCompiler:
    return FlowCompiler(settings)


@pytest.fixture
def gather_service(compiler) -> GatherService:
    return GatherService(compiler)


@pytest.fixture
def scenario_flow() -> Flow:
    """Welcome → menu (1 forwards to sales, 2 hangs up), two attempts allowed."""
    return make_flow([
        {
            "id": "welcome",
            "type": "say",
            "config": {"text": "Welcome"},
            "connections": ["gather1"],
        },
        {
            "id": "gather1",
            "type": "gather",
            "config": {
                "prompt": "Press 1 for sales. Press 2 to end the call.",
                "maxRetries": 2,
                "retryMessage": "Please try again.",
                "goodbyeMessage": "Sorry we could not help. Goodbye.",
                "options": [
                    {"digit": "1", "action": "say", "text": "Sales", "blockId": "sales"},
                    {"digit": "2", "action": "say", "text": "Goodbye", "blockId": "bye"},
                ],
            },
            "connections": [],
        },
        {
            "id": "sales",
            "type": "forward",
            "config": {"number": "+15551234567"},
            "connections": [],
        },
        {"id": "bye", "type": "hangup", "config": {}, "connections": []},
    ])


@pytest.fixture
def store(scenario_flow) -> InMemoryFlowStore:
    store = InMemoryFlowStore()
    store.add_flow(BUSINESS_NUMBER, scenario_flow)
    return store


@pytest.fixture
def dispatcher(store, settings) -> CallDispatcher:
    return CallDispatcher(store, settings)


@pytest.fixture
def fresh_call() -> TurnContext:
    return TurnContext(call_sid="CA123", caller_number=CALLER_NUMBER, called_number=BUSINESS_NUMBER)


@pytest.fixture
def parse_twiml():
    """Parse a TwiML document; fails the test if it is not well-formed."""
    def _parse(twiml: str) -> ET.Element:
        assert twiml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        return ET.fromstring(twiml.encode("utf-8"))
    return _parse


@pytest.fixture
def flow_factory():
    return make_flow
