from twilio.twiml.voice_response import VoiceResponse
from fastapi.responses import Response
from typing import Iterable, List, Optional
import xml.etree.ElementTree as ET
from app.models.flow import ForwardStrategy

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

DIAL_RECORD_MODE = "record-from-ringing-dual"

FORWARD_ANNOUNCEMENTS = {
    ForwardStrategy.SIMULTANEOUS: "Connecting your call to our team. Please hold.",
    ForwardStrategy.SEQUENTIAL: "Connecting your call. Please hold.",
    ForwardStrategy.PRIORITY: "Connecting you to our primary contact. Please hold.",
}

class TwilioService:
    @staticmethod
    def escape_xml(text: Optional[str]) -> str:
        """Escape the five XML metacharacters."""
        if not text:
            return ""
        return (
            str(text)
            .replace("&", "&amp;")
            .replace("<", "&lt;")
            .replace(">", "&gt;")
            .replace('"', "&quot;")
            .replace("'", "&#39;")
        )

    @staticmethod
    def _serialize(element: ET.Element) -> str:
        attrs = "".join(
            f' {name}="{TwilioService.escape_xml(value)}"' for name, value in element.attrib.items()
        )
        inner = TwilioService.escape_xml(element.text) + "".join(
            TwilioService._serialize(child) for child in element
        )
        if inner:
            markup = f"<{element.tag}{attrs}>{inner}</{element.tag}>"
        else:
            markup = f"<{element.tag}{attrs} />"
        return markup + TwilioService.escape_xml(element.tail)

    @staticmethod
    def render(resp: VoiceResponse) -> str:
        """Serialize a VoiceResponse with every text node and attribute fully escaped."""
        # ElementTree leaves quotes in text nodes unescaped, so serialize ourselves
        return XML_DECLARATION + TwilioService._serialize(resp.xml())

    @staticmethod
    def create_response(twiml: str, status_code: int = 200) -> Response:
        """Wrap a TwiML document in an XML HTTP response."""
        return Response(content=twiml, media_type="application/xml", status_code=status_code)

    @staticmethod
    def create_hangup_twiml(message: str, voice: str = "alice") -> str:
        """Create a TwiML document that says a message and hangs up."""
        resp = VoiceResponse()
        resp.say(message, voice=voice)
        resp.hangup()
        return TwilioService.render(resp)

    @staticmethod
    def create_hangup_response(message: str, voice: str = "alice", status_code: int = 200) -> Response:
        """Create a TwiML response that says a message and hangs up."""
        return TwilioService.create_response(
            TwilioService.create_hangup_twiml(message, voice), status_code=status_code
        )

    @staticmethod
    def clean_numbers(numbers: Iterable[Optional[str]]) -> List[str]:
        """Drop empty and blank entries from a list of phone numbers."""
        return [str(n).strip() for n in numbers if n is not None and str(n).strip()]

    @staticmethod
    def resolve_strategy(strategy: Optional[str]) -> ForwardStrategy:
        """Parse a forward strategy, falling back to simultaneous for unknown values."""
        try:
            return ForwardStrategy(strategy or ForwardStrategy.SIMULTANEOUS.value)
        except ValueError:
            return ForwardStrategy.SIMULTANEOUS

    @staticmethod
    def append_dial_group(
        resp: VoiceResponse,
        numbers: List[str],
        strategy: Optional[str],
        ring_timeout: int,
        voice: Optional[str] = None,
        record: bool = False,
    ) -> None:
        """
        Dial several numbers.

        simultaneous rings every number at once and the first to answer wins;
        sequential rings one number at a time with a short pause in between;
        priority rings the first number alone (longer), then the rest together.
        Unknown strategies fall back to simultaneous.

        Args:
            resp: Response to append to
            numbers: Cleaned phone numbers, in dialing order
            strategy: Forward strategy name
            ring_timeout: Seconds to ring each attempt
            voice: When set, the caller hears a hold notice between attempts
                instead of silence
            record: Record forwarded calls from the moment they start ringing
        """
        strategy = TwilioService.resolve_strategy(strategy)
        record_mode = DIAL_RECORD_MODE if record else None

        if strategy == ForwardStrategy.SEQUENTIAL:
            for index, number in enumerate(numbers):
                if index > 0:
                    if voice:
                        resp.say("Trying another number. Please continue to hold.", voice=voice)
                    else:
                        resp.pause(length=1)
                dial = resp.dial(timeout=ring_timeout, record=record_mode)
                dial.number(number)
        elif strategy == ForwardStrategy.PRIORITY:
            primary = resp.dial(timeout=ring_timeout + 10, record=record_mode)
            primary.number(numbers[0])
            if len(numbers) > 1:
                if voice:
                    resp.say("Trying our backup contacts. Please continue to hold.", voice=voice)
                fallback = resp.dial(timeout=ring_timeout, record=record_mode)
                for number in numbers[1:]:
                    fallback.number(number)
        else:
            dial = resp.dial(timeout=ring_timeout, record=record_mode)
            for number in numbers:
                dial.number(number)

    @staticmethod
    def create_multi_forward_twiml(numbers: List[str], strategy: Optional[str], ring_timeout: int, voice: str = "alice") -> str:
        """Ring a group of numbers, recording the call, and fall back to voicemail when nobody answers."""
        resp = VoiceResponse()
        resp.say(FORWARD_ANNOUNCEMENTS[TwilioService.resolve_strategy(strategy)], voice=voice)
        TwilioService.append_dial_group(resp, numbers, strategy, ring_timeout, voice=voice, record=True)
        resp.say(
            "Sorry, no one is available to take your call right now. Please leave a message after the beep.",
            voice=voice,
        )
        resp.record(max_length=60, transcribe=True)
        resp.say("Thank you for your message. We'll get back to you soon. Goodbye.", voice=voice)
        resp.hangup()
        return TwilioService.render(resp)
