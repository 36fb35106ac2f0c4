from twilio.twiml.voice_response import VoiceResponse
from typing import Optional
from app.core.logger import logger
from app.models.call import Continuation, GatherOutcome, GatherResult, TurnContext
from app.models.flow import DEFAULT_GOODBYE_MESSAGE, DEFAULT_RETRY_MESSAGE, Flow, GatherBlock
from app.services.flow_compiler import BlockConfigError, CONFIGURATION_ERROR_MESSAGE, FlowCompiler
from app.services.twilio_service import TwilioService

GATHER_NOT_FOUND_MESSAGE = "Configuration error. Menu not found. Please contact support."
TARGET_NOT_FOUND_MESSAGE = "Configuration error. Connected block not found. Please contact support."

class GatherService:
    """
    Resumes a suspended gather block when the caller's input comes back.

    Each callback is a separate request, so everything needed to continue
    (the gather block id and the retry count) arrives in the continuation.
    A gather either loops back to awaiting input (bounded by maxRetries),
    hands off to the compiler at the chosen option's target, or says
    goodbye once retries are exhausted.
    """

    def __init__(self, compiler: FlowCompiler):
        self.compiler = compiler

    def resume(
        self,
        flow: Flow,
        continuation: Continuation,
        digits: Optional[str],
        context: Optional[TurnContext] = None,
    ) -> GatherResult:
        call_sid = context.call_sid if context else ""
        block = flow.get_block(continuation.block_id)

        if not isinstance(block, GatherBlock):
            logger.warning(
                f"Configuration error: gather block {continuation.block_id} not found in flow {flow.id}",
                extra={"call_sid": call_sid, "flow_id": flow.id, "block_id": continuation.block_id},
            )
            return self._hangup(GatherOutcome.FAILED, GATHER_NOT_FOUND_MESSAGE, flow)

        digits = (digits or "").strip()
        logger.info(
            "Gather input received",
            extra={"call_sid": call_sid, "flow_id": flow.id, "block_id": block.id, "digits": digits},
        )

        if not digits:
            return self._retry_or_exhaust(block, flow, continuation, prefix=None, call_sid=call_sid)

        option = block.find_option(digits)
        if option is None:
            return self._retry_or_exhaust(
                block, flow, continuation, prefix=self._invalid_selection_message(block, digits), call_sid=call_sid
            )

        target_id = (option.target_block_id or "").strip()
        if not target_id:
            message = option.text.strip() if option.text and option.text.strip() else f"Thank you for selecting option {digits}."
            logger.info(f"Gather outcome: option {digits} has no target, ending call", extra={"call_sid": call_sid})
            return self._hangup(GatherOutcome.MATCHED, message, flow, block.config.voice)

        target = flow.get_block(target_id)
        if target is None:
            logger.warning(
                f"Configuration error: option {digits} of block {block.id} points at missing block {target_id}",
                extra={"call_sid": call_sid, "flow_id": flow.id, "block_id": block.id},
            )
            return self._hangup(GatherOutcome.FAILED, TARGET_NOT_FOUND_MESSAGE, flow)

        logger.info(f"Gather outcome: option {digits} routed to block {target.id}", extra={"call_sid": call_sid})
        return GatherResult(outcome=GatherOutcome.MATCHED, twiml=self.compiler.compile(target, flow, context))

    def _retry_or_exhaust(
        self,
        block: GatherBlock,
        flow: Flow,
        continuation: Continuation,
        prefix: Optional[str],
        call_sid: str,
    ) -> GatherResult:
        config = block.config
        max_retries = max(config.max_retries if config.max_retries is not None else 3, 1)
        following = continuation.next_attempt()
        voice = self.compiler.resolve_voice(config.voice, flow)

        if following.retry >= max_retries:
            logger.info(
                f"Gather outcome: retries exhausted for block {block.id} after {following.retry} attempt(s)",
                extra={"call_sid": call_sid},
            )
            return self._hangup(GatherOutcome.EXHAUSTED, config.goodbye_message or DEFAULT_GOODBYE_MESSAGE, flow, config.voice)

        retry_message = config.retry_message or DEFAULT_RETRY_MESSAGE
        message = f"{prefix} {retry_message}" if prefix else retry_message

        resp = VoiceResponse()
        resp.say(message, voice=voice)
        try:
            action = self.compiler.append_gather(resp, block, flow, retry=following.retry)
        except BlockConfigError as e:
            logger.warning(f"Configuration error: {e}", extra={"call_sid": call_sid, "block_id": block.id})
            return self._hangup(GatherOutcome.FAILED, CONFIGURATION_ERROR_MESSAGE, flow)
        if prefix is None:
            # Silence: reached only if the replayed gather also times out without calling back
            resp.redirect(action, method="POST")

        logger.info(f"Gather outcome: retry {following.retry} of {max_retries} for block {block.id}", extra={"call_sid": call_sid})
        return GatherResult(outcome=GatherOutcome.RETRY, twiml=TwilioService.render(resp))

    def _invalid_selection_message(self, block: GatherBlock, digits: str) -> str:
        message = f"Invalid selection. You pressed {digits}."
        choices = [
            f"Press {option.digit} for {option.label}"
            for option in block.config.options
            if option.digit and option.digit.strip()
        ]
        if choices:
            message += f" The available options are: {', '.join(choices)}."
        return message

    def _hangup(self, outcome: GatherOutcome, message: str, flow: Flow, block_voice: Optional[str] = None) -> GatherResult:
        voice = self.compiler.resolve_voice(block_voice, flow)
        return GatherResult(outcome=outcome, twiml=TwilioService.create_hangup_twiml(message, voice))
