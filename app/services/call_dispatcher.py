from twilio.twiml.voice_response import VoiceResponse
from typing import Optional
from app.core.config import Settings, get_settings
from app.core.logger import logger
from app.models.call import InvalidContinuationError, TurnContext
from app.models.flow import Flow, FlowConfigError
from app.services.flow_compiler import FlowCompiler
from app.services.flow_store import FlowStore
from app.services.gather_service import GatherService
from app.services.twilio_service import TwilioService

NUMBER_NOT_CONFIGURED_MESSAGE = "This number is not configured."
NO_ACTIVE_FLOW_MESSAGE = "No active call flow found."
FLOW_CONFIGURATION_ERROR_MESSAGE = "Configuration error. Please contact support."
INVALID_CALLBACK_MESSAGE = "We're sorry, we could not continue your call. Please call back and try again."
TECHNICAL_DIFFICULTIES_MESSAGE = "We're experiencing technical difficulties. Please try again later."

class CallDispatcher:
    """Entry point for every inbound voice webhook: number → active flow → TwiML."""

    def __init__(self, store: FlowStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.compiler = FlowCompiler(self.settings)
        self.gather_service = GatherService(self.compiler)

    async def handle(self, context: TurnContext) -> str:
        """
        Produce the TwiML document for one turn of a call.

        Never raises: every failure becomes a spoken message and a hangup,
        since an empty or malformed answer leaves a live call in limbo.
        """
        logger.info(
            "Incoming call turn",
            extra={"call_sid": context.call_sid, "called_number": context.called_number, "block_id": context.block_id or ""},
        )
        try:
            return await self._handle(context)
        except FlowConfigError as e:
            logger.error(f"Configuration error: {str(e)}", extra={"call_sid": context.call_sid})
            return self._hangup(FLOW_CONFIGURATION_ERROR_MESSAGE)
        except InvalidContinuationError as e:
            logger.warning(f"Rejected gather callback: {str(e)}", extra={"call_sid": context.call_sid})
            return self._hangup(INVALID_CALLBACK_MESSAGE)
        except Exception as e:
            logger.error(f"Error handling call: {str(e)}", extra={"call_sid": context.call_sid}, exc_info=True)
            return self._hangup(TECHNICAL_DIFFICULTIES_MESSAGE)

    async def _handle(self, context: TurnContext) -> str:
        binding = await self.store.lookup(context.called_number) if context.called_number else None
        if binding is None or not binding.is_active:
            logger.warning(f"Number {context.called_number} is not configured", extra={"call_sid": context.call_sid})
            return self._hangup(NUMBER_NOT_CONFIGURED_MESSAGE)

        flow = binding.flow
        if flow is None or not flow.is_active:
            logger.warning(f"No active call flow for {context.called_number}", extra={"call_sid": context.call_sid})
            return self._hangup(NO_ACTIVE_FLOW_MESSAGE)

        if not flow.blocks:
            return self._default_greeting(flow)

        continuation = context.continuation
        if continuation is not None:
            continuation.verify(context.signature, self.settings.CONTINUATION_SECRET)
            result = self.gather_service.resume(flow, continuation, context.digits, context)
            return result.twiml

        entry = flow.get_entry_block()
        return self.compiler.compile(entry, flow, context)

    def _default_greeting(self, flow: Flow) -> str:
        """What an active but empty flow plays."""
        voice = self.compiler.resolve_voice(None, flow)
        resp = VoiceResponse()
        resp.say("Hello! Thank you for calling. This number is powered by NumSphere.", voice=voice)
        resp.pause(length=1)
        resp.say("Please configure your call flow in the dashboard to customize this experience.", voice=voice)
        resp.hangup()
        return TwilioService.render(resp)

    def _hangup(self, message: str) -> str:
        return TwilioService.create_hangup_twiml(message, self.settings.DEFAULT_VOICE)
