from pydantic import BaseModel, ConfigDict, Field, AliasChoices, PrivateAttr, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from enum import Enum
import json

from app.core.logger import logger

DEFAULT_RETRY_MESSAGE = "Sorry, I didn't understand. Please try again."
DEFAULT_GOODBYE_MESSAGE = "Thank you for calling. Goodbye!"

class FlowConfigError(Exception):
    """Raised when a stored flow configuration cannot be read at all."""

class BlockType(str, Enum):
    SAY = "say"
    PAUSE = "pause"
    FORWARD = "forward"
    MULTI_FORWARD = "multi_forward"
    HOLD = "hold"
    RECORD = "record"
    PLAY = "play"
    GATHER = "gather"
    SMS = "sms"
    HANGUP = "hangup"

class ForwardStrategy(str, Enum):
    SIMULTANEOUS = "simultaneous"
    SEQUENTIAL = "sequential"
    PRIORITY = "priority"

# Block configs are stored by the dashboard with camelCase keys

class BlockConfig(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        frozen=True,
    )

class SayConfig(BlockConfig):
    text: Optional[str] = None
    voice: Optional[str] = None
    speed: Optional[float] = None

class PauseConfig(BlockConfig):
    duration: Optional[int] = None

class ForwardConfig(BlockConfig):
    number: Optional[str] = None
    timeout: Optional[int] = Field(
        None, validation_alias=AliasChoices("timeout", "timeoutSeconds", "timeout_seconds")
    )

class MultiForwardConfig(BlockConfig):
    numbers: List[str] = Field(default_factory=list)
    forward_strategy: Optional[str] = None
    ring_timeout: Optional[int] = None

class HoldConfig(BlockConfig):
    message: Optional[str] = None
    voice: Optional[str] = None
    music_type: Optional[str] = None
    preset_music: Optional[str] = None
    music_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("musicUrl", "holdMusicUrl", "music_url")
    )
    hold_music_loop: Optional[int] = None

class RecordConfig(BlockConfig):
    prompt: Optional[str] = None
    voice: Optional[str] = None
    max_length: Optional[int] = Field(
        None, validation_alias=AliasChoices("maxLength", "maxLengthSeconds", "max_length")
    )
    finish_on_key: Optional[str] = None

class PlayConfig(BlockConfig):
    url: Optional[str] = None

class SmsConfig(BlockConfig):
    message: Optional[str] = None
    to: Optional[str] = None

class GatherOption(BlockConfig):
    digit: str = ""
    text: Optional[str] = None
    target_block_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("blockId", "targetBlockId", "target_block_id")
    )

    @property
    def label(self) -> str:
        return self.text or f"option {self.digit}"

class GatherConfig(BlockConfig):
    prompt: Optional[str] = None
    voice: Optional[str] = None
    options: List[GatherOption] = Field(default_factory=list)
    max_retries: Optional[int] = None
    retry_message: Optional[str] = None
    goodbye_message: Optional[str] = None
    timeout: Optional[int] = None

class HangupConfig(BlockConfig):
    pass

# Blocks

class BaseBlock(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    next_block_id: Optional[str] = None

class SayBlock(BaseBlock):
    type: Literal["say"] = "say"
    config: SayConfig = Field(default_factory=SayConfig)

class PauseBlock(BaseBlock):
    type: Literal["pause"] = "pause"
    config: PauseConfig = Field(default_factory=PauseConfig)

class ForwardBlock(BaseBlock):
    type: Literal["forward"] = "forward"
    config: ForwardConfig = Field(default_factory=ForwardConfig)

class MultiForwardBlock(BaseBlock):
    type: Literal["multi_forward"] = "multi_forward"
    config: MultiForwardConfig = Field(default_factory=MultiForwardConfig)

class HoldBlock(BaseBlock):
    type: Literal["hold"] = "hold"
    config: HoldConfig = Field(default_factory=HoldConfig)

class RecordBlock(BaseBlock):
    type: Literal["record"] = "record"
    config: RecordConfig = Field(default_factory=RecordConfig)

class PlayBlock(BaseBlock):
    type: Literal["play"] = "play"
    config: PlayConfig = Field(default_factory=PlayConfig)

class GatherBlock(BaseBlock):
    type: Literal["gather"] = "gather"
    config: GatherConfig = Field(default_factory=GatherConfig)

    def find_option(self, digits: str) -> Optional[GatherOption]:
        for option in self.config.options:
            if option.digit and option.digit == digits:
                return option
        return None

class SmsBlock(BaseBlock):
    type: Literal["sms"] = "sms"
    config: SmsConfig = Field(default_factory=SmsConfig)

class HangupBlock(BaseBlock):
    type: Literal["hangup"] = "hangup"
    config: HangupConfig = Field(default_factory=HangupConfig)

class UnknownBlock(BaseBlock):
    """A stored block that could not be loaded as any known block type."""
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None

KnownBlock = Annotated[
    Union[
        SayBlock,
        PauseBlock,
        ForwardBlock,
        MultiForwardBlock,
        HoldBlock,
        RecordBlock,
        PlayBlock,
        GatherBlock,
        SmsBlock,
        HangupBlock,
    ],
    Field(discriminator="type"),
]

FlowBlock = Union[
    SayBlock,
    PauseBlock,
    ForwardBlock,
    MultiForwardBlock,
    HoldBlock,
    RecordBlock,
    PlayBlock,
    GatherBlock,
    SmsBlock,
    HangupBlock,
    UnknownBlock,
]

_known_block_adapter = TypeAdapter(KnownBlock)

def parse_block(raw: Any) -> FlowBlock:
    """
    Load one stored block.

    Stored blocks keep their successors in a `connections` list; only the
    first entry is used. Blocks that fail validation come back as
    UnknownBlock so one bad block never takes down the whole flow.
    """
    if not isinstance(raw, dict):
        return UnknownBlock(id="", type=type(raw).__name__, reason="Block is not an object")

    data = dict(raw)
    if data.get("id") is not None:
        data["id"] = str(data["id"])

    connections = data.pop("connections", None)
    next_block_id = data.pop("nextBlockId", None) or data.get("next_block_id")
    if not next_block_id and isinstance(connections, list) and connections:
        next_block_id = connections[0]
    data["next_block_id"] = str(next_block_id) if next_block_id else None

    if data.get("config") is None:
        data["config"] = {}

    try:
        return _known_block_adapter.validate_python(data)
    except ValidationError as e:
        block_id = str(data.get("id") or "")
        logger.warning(
            f"Configuration error in block {block_id or '<no id>'} of type {data.get('type')}: {e.error_count()} invalid field(s)",
            extra={"block_id": block_id},
        )
        config = data["config"] if isinstance(data["config"], dict) else {}
        return UnknownBlock(id=block_id, type=str(data.get("type")), config=config, reason=str(e))

def _legacy_blocks(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Convert the pre-builder flow format (greeting/menu/voicemail/forward) into blocks.

    Without a menu the sections play in order. A menu suspends the call, so
    whatever follows it is reached through its options instead: an option
    whose action is "voicemail" or "forward" routes to that section, and a
    "forward" option carrying its own number gets a forward block of its own.
    """
    greeting = menu = voicemail = forward = None
    extra: List[Dict[str, Any]] = []

    if config.get("greeting"):
        greeting = {"id": "greeting", "type": "say", "config": {"text": config["greeting"]}}

    voicemail_config = config.get("voicemail")
    if voicemail_config:
        prompt = voicemail_config.get("prompt") if isinstance(voicemail_config, dict) else None
        voicemail = {
            "id": "voicemail",
            "type": "record",
            "config": {"prompt": prompt or "Please leave a message after the beep.", "maxLength": 60},
        }

    forward_config = config.get("forward")
    if isinstance(forward_config, dict) and forward_config.get("number"):
        forward = {"id": "forward", "type": "forward", "config": {"number": forward_config["number"], "timeout": 30}}

    menu_config = config.get("menu")
    if isinstance(menu_config, dict) and menu_config.get("options"):
        sections = {"voicemail": voicemail, "forward": forward}
        options = []
        for raw_option in menu_config["options"]:
            option = dict(raw_option) if isinstance(raw_option, dict) else {}
            action = option.get("action")
            if not option.get("blockId") and action == "forward" and option.get("number"):
                block_id = f"menu-forward-{option.get('digit')}"
                extra.append({"id": block_id, "type": "forward", "config": {"number": option["number"], "timeout": 30}})
                option["blockId"] = block_id
            elif not option.get("blockId") and sections.get(action):
                option["blockId"] = sections[action]["id"]
            options.append(option)

        menu = {
            "id": "menu",
            "type": "gather",
            "config": {"prompt": menu_config.get("prompt") or "Please select an option.", "options": options},
        }

    blocks = [block for block in (greeting, menu, voicemail, forward) if block]
    for current, following in zip(blocks, blocks[1:]):
        if current["type"] != "gather":
            current["connections"] = [following["id"]]

    return blocks + extra

class FlowSettings(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    voice: Optional[str] = None
    entry_block_id: Optional[str] = None

class Flow(BaseModel):
    id: str
    name: str = ""
    is_active: bool = True
    blocks: List[FlowBlock] = Field(default_factory=list)
    settings: FlowSettings = Field(default_factory=FlowSettings)

    _index: Dict[str, FlowBlock] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        for block in self.blocks:
            # First declaration wins on duplicate ids
            self._index.setdefault(block.id, block)

    def get_block(self, block_id: Optional[str]) -> Optional[FlowBlock]:
        if not block_id:
            return None
        return self._index.get(block_id)

    def get_entry_block(self) -> Optional[FlowBlock]:
        """
        Block a fresh call starts at.

        An explicit entry block wins; otherwise the first block in
        declaration order, which is how saved flows have always behaved.
        """
        explicit = self.get_block(self.settings.entry_block_id)
        if explicit is not None:
            return explicit
        return self.blocks[0] if self.blocks else None

    def get_successor(self, block: FlowBlock) -> Optional[FlowBlock]:
        if block.type == BlockType.HANGUP:
            return None
        return self.get_block(block.next_block_id)

    def has_dangling_successor(self, block: FlowBlock) -> bool:
        return bool(block.next_block_id) and self.get_block(block.next_block_id) is None

    @classmethod
    def from_config(
        cls,
        flow_id: str,
        flow_config: Any,
        name: str = "",
        is_active: bool = True,
    ) -> "Flow":
        """
        Build a flow from a stored `flow_config` value.

        Args:
            flow_id: Flow identifier
            flow_config: JSON string or dict with a `blocks` list, or the legacy format
            name: Flow name
            is_active: Whether the flow is the number's active flow

        Returns:
            The loaded Flow

        Raises:
            FlowConfigError: If the configuration is not a readable flow
        """
        config = flow_config
        if isinstance(config, str):
            try:
                config = json.loads(config)
            except ValueError as e:
                raise FlowConfigError(f"Flow {flow_id} config is not valid JSON: {e}") from e

        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise FlowConfigError(f"Flow {flow_id} config must be an object, got {type(config).__name__}")

        raw_blocks = config.get("blocks")
        if raw_blocks is None:
            raw_blocks = _legacy_blocks(config)
        elif not isinstance(raw_blocks, list):
            raise FlowConfigError(f"Flow {flow_id} blocks must be a list")

        settings = FlowSettings(
            voice=config.get("voice") or None,
            entry_block_id=config.get("entryBlockId") or config.get("entry_block_id") or None,
        )

        return cls(
            id=str(flow_id),
            name=name or "",
            is_active=is_active,
            blocks=[parse_block(raw) for raw in raw_blocks],
            settings=settings,
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Flow":
        """Build a flow from a `call_flows` row."""
        return cls.from_config(
            flow_id=str(record.get("id") or ""),
            flow_config=record.get("flow_config"),
            name=record.get("flow_name") or "",
            is_active=bool(record.get("is_active")),
        )
