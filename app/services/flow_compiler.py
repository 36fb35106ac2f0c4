from twilio.twiml.voice_response import VoiceResponse
from typing import Callable, Dict, Optional, Set
from app.core.config import Settings, get_settings
from app.core.logger import logger
from app.models.call import Continuation, TurnContext
from app.models.flow import (
    BlockType,
    Flow,
    FlowBlock,
    ForwardBlock,
    GatherBlock,
    HangupBlock,
    HoldBlock,
    MultiForwardBlock,
    PauseBlock,
    PlayBlock,
    RecordBlock,
    SayBlock,
    SmsBlock,
    UnknownBlock,
)
from app.services.twilio_service import TwilioService

CONFIGURATION_ERROR_MESSAGE = "We're sorry, this call flow has a configuration error. Please contact support."
UNPROCESSABLE_BLOCK_MESSAGE = "We're sorry, we cannot process your call at this time. Goodbye."

MIN_SAY_RATE = 0.5
MAX_SAY_RATE = 2.0

HOLD_MUSIC_PRESETS = {
    "classical": "https://com.twilio.music.classical.s3.amazonaws.com/BusyStrings.mp3",
    "ambient": "https://com.twilio.music.ambient.s3.amazonaws.com/gurdonark_-_Plains.mp3",
    "electronica": "https://com.twilio.music.electronica.s3.amazonaws.com/teru_-_110_Downtempo_Electronic_4.mp3",
    "guitars": "https://com.twilio.music.guitars.s3.amazonaws.com/Pitx_-_Long_Winter.mp3",
    "rock": "https://com.twilio.music.rock.s3.amazonaws.com/nickleus_-_original_guitar_song_200907251723.mp3",
    "soft-rock": "https://com.twilio.music.soft-rock.s3.amazonaws.com/_ghost_-_promo_2_sample_pack.mp3",
}

class BlockConfigError(Exception):
    """Raised when a block is missing configuration it cannot be rendered without."""

    def __init__(self, block: FlowBlock, field: str):
        super().__init__(f"Block {block.id} ({block.type}) is missing '{field}'")
        self.block = block
        self.field = field

class FlowCompiler:
    """Turns a call flow into TwiML, starting at one block and following successors."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    # Public API

    def compile(self, start_block: FlowBlock, flow: Flow, context: Optional[TurnContext] = None) -> str:
        """
        Compile a flow into a TwiML document.

        Args:
            start_block: Block to start rendering at
            flow: The flow the block belongs to
            context: The current turn, if any

        Returns:
            A complete TwiML document
        """
        resp = VoiceResponse()
        self.build(resp, start_block, flow, context)
        twiml = TwilioService.render(resp)
        logger.info(
            f"Compiled response from block {start_block.id}",
            extra={"call_sid": context.call_sid if context else "", "flow_id": flow.id, "block_id": start_block.id},
        )
        return twiml

    def build(self, resp: VoiceResponse, start_block: FlowBlock, flow: Flow, context: Optional[TurnContext] = None) -> None:
        """Append the instructions for `start_block` and its successors to `resp`."""
        visited: Set[str] = set()
        block: Optional[FlowBlock] = start_block

        while block is not None:
            if block.id in visited:
                logger.info(f"Cycle detected at block {block.id}, stopping", extra={"flow_id": flow.id, "block_id": block.id})
                return
            visited.add(block.id)

            try:
                suspended = self._render_block(resp, block, flow, context)
            except BlockConfigError as e:
                logger.warning(f"Configuration error: {e}", extra={"flow_id": flow.id, "block_id": block.id})
                self.append_apology(resp, flow)
                return

            if suspended:
                return

            if flow.has_dangling_successor(block):
                logger.warning(
                    f"Configuration error: block {block.id} points at missing block {block.next_block_id}",
                    extra={"flow_id": flow.id, "block_id": block.id},
                )
                self.append_apology(resp, flow)
                return

            block = flow.get_successor(block)

    def resolve_voice(self, block_voice: Optional[str], flow: Flow) -> str:
        return block_voice or flow.settings.voice or self.settings.DEFAULT_VOICE

    def callback_url(self, continuation: Continuation) -> str:
        return continuation.callback_url(
            self.settings.PUBLIC_BASE_URL,
            self.settings.GATHER_CALLBACK_PATH,
            self.settings.CONTINUATION_SECRET,
        )

    def append_apology(self, resp: VoiceResponse, flow: Flow, message: str = CONFIGURATION_ERROR_MESSAGE) -> None:
        resp.say(message, voice=self.resolve_voice(None, flow))
        resp.hangup()

    def append_gather(self, resp: VoiceResponse, block: GatherBlock, flow: Flow, retry: int = 0) -> str:
        """Add the collect-input instruction for a gather block and return its callback URL."""
        if not block.config.prompt:
            raise BlockConfigError(block, "prompt")

        action = self.callback_url(Continuation(block_id=block.id, retry=retry))
        gather = resp.gather(
            input="dtmf",
            num_digits=1,
            timeout=block.config.timeout or self.settings.GATHER_TIMEOUT_SECONDS,
            action=action,
            method="POST",
            action_on_empty_result=True,
        )
        gather.say(block.config.prompt, voice=self.resolve_voice(block.config.voice, flow))
        return action

    # Block renderers. Each returns True when the response must stop at this block.

    def _render_block(self, resp: VoiceResponse, block: FlowBlock, flow: Flow, context: Optional[TurnContext]) -> bool:
        if isinstance(block, UnknownBlock):
            logger.warning(
                f"Configuration error: cannot process block {block.id} of type {block.type}",
                extra={"flow_id": flow.id, "block_id": block.id},
            )
            self.append_apology(resp, flow, UNPROCESSABLE_BLOCK_MESSAGE)
            return True

        renderer = _RENDERERS[BlockType(block.type)]
        return renderer(self, resp, block, flow, context)

    def _render_say(self, resp, block: SayBlock, flow, context) -> bool:
        if not block.config.text:
            raise BlockConfigError(block, "text")
        speed = block.config.speed or 1.0
        rate = max(MIN_SAY_RATE, min(MAX_SAY_RATE, speed))
        resp.say(block.config.text, voice=self.resolve_voice(block.config.voice, flow), rate=rate)
        return False

    def _render_pause(self, resp, block: PauseBlock, flow, context) -> bool:
        resp.pause(length=block.config.duration or 2)
        return False

    def _render_forward(self, resp, block: ForwardBlock, flow, context) -> bool:
        if not block.config.number:
            raise BlockConfigError(block, "number")
        resp.dial(block.config.number.strip(), timeout=block.config.timeout or 30)
        return False

    def _render_multi_forward(self, resp, block: MultiForwardBlock, flow, context) -> bool:
        numbers = TwilioService.clean_numbers(block.config.numbers)
        if not numbers:
            raise BlockConfigError(block, "numbers")
        TwilioService.append_dial_group(
            resp, numbers, block.config.forward_strategy, block.config.ring_timeout or 20
        )
        return False

    def _render_hold(self, resp, block: HoldBlock, flow, context) -> bool:
        config = block.config
        if config.message:
            resp.say(config.message, voice=self.resolve_voice(config.voice, flow))

        if config.music_type == "custom" and config.music_url:
            music_url = config.music_url
        else:
            music_url = HOLD_MUSIC_PRESETS.get(config.preset_music or "classical", HOLD_MUSIC_PRESETS["classical"])

        resp.play(music_url, loop=config.hold_music_loop or 10)
        return False

    def _render_record(self, resp, block: RecordBlock, flow, context) -> bool:
        config = block.config
        if config.prompt:
            resp.say(config.prompt, voice=self.resolve_voice(config.voice, flow))
        resp.record(
            max_length=config.max_length or 300,
            finish_on_key=config.finish_on_key or "#",
            transcribe=True,
        )
        return False

    def _render_play(self, resp, block: PlayBlock, flow, context) -> bool:
        if not block.config.url:
            raise BlockConfigError(block, "url")
        resp.play(block.config.url)
        return False

    def _render_sms(self, resp, block: SmsBlock, flow, context) -> bool:
        if not block.config.message:
            raise BlockConfigError(block, "message")
        to = block.config.to or (context.caller_number if context else None)
        resp.sms(block.config.message, to=to)
        return False

    def _render_hangup(self, resp, block: HangupBlock, flow, context) -> bool:
        resp.hangup()
        return True

    def _render_gather(self, resp, block: GatherBlock, flow, context) -> bool:
        self.append_gather(resp, block, flow, retry=0)
        return True

_RENDERERS: Dict[BlockType, Callable[..., bool]] = {
    BlockType.SAY: FlowCompiler._render_say,
    BlockType.PAUSE: FlowCompiler._render_pause,
    BlockType.FORWARD: FlowCompiler._render_forward,
    BlockType.MULTI_FORWARD: FlowCompiler._render_multi_forward,
    BlockType.HOLD: FlowCompiler._render_hold,
    BlockType.RECORD: FlowCompiler._render_record,
    BlockType.PLAY: FlowCompiler._render_play,
    BlockType.GATHER: FlowCompiler._render_gather,
    BlockType.SMS: FlowCompiler._render_sms,
    BlockType.HANGUP: FlowCompiler._render_hangup,
}

_missing_renderers = set(BlockType) - set(_RENDERERS)
if _missing_renderers:
    raise RuntimeError(f"No renderer for block types: {sorted(t.value for t in _missing_renderers)}")
