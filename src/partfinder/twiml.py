"""
TwiML rendering for call flow prompts.

The call flow describes each reply as a Prompt: ordered spoken segments plus
exactly one terminal instruction (gather speech, gather digits, redirect or
hang up). `render_prompt` turns that into TwiML via the Twilio helper library.

For gathers, the spoken segments are nested inside <Gather> so the caller can
answer before narration finishes. A gather's `on_timeout` URL is emitted as a
trailing <Redirect>, which Twilio follows when the gather collects nothing.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union

from twilio.twiml.voice_response import VoiceResponse

from src.partfinder.config import Config, get_config

VOICE_PATH = "/voice"
PROCESS_SPEECH_PATH = "/process-speech"
HANDLE_CHOICE_PATH = "/handle-choice"


@dataclass(frozen=True)
class GatherSpeech:
    action: str = PROCESS_SPEECH_PATH
    on_timeout: Optional[str] = VOICE_PATH


@dataclass(frozen=True)
class GatherDigits:
    action: str = HANDLE_CHOICE_PATH
    num_digits: int = 1
    timeout: Optional[int] = None
    on_timeout: Optional[str] = VOICE_PATH


@dataclass(frozen=True)
class Redirect:
    url: str = VOICE_PATH


@dataclass(frozen=True)
class Hangup:
    pass


Terminal = Union[GatherSpeech, GatherDigits, Redirect, Hangup]


@dataclass
class Prompt:
    """One webhook reply: what to say, then what happens next."""
    says: List[str] = field(default_factory=list)
    terminal: Terminal = field(default_factory=Redirect)

    @property
    def text(self) -> str:
        """All spoken segments joined, handy for logs and tests."""
        return " ".join(self.says)


def render_prompt(prompt: Prompt, config: Optional[Config] = None) -> str:
    """
    Render a Prompt to a TwiML document.

    Returns:
        XML string including the XML declaration
    """
    if config is None:
        config = get_config()

    vr = VoiceResponse()
    terminal = prompt.terminal

    if isinstance(terminal, GatherSpeech):
        gather = vr.gather(
            input="speech",
            action=terminal.action,
            method="POST",
            speech_timeout="auto",
            language=config.speech_language,
            hints=config.speech_hints,
        )
        for text in prompt.says:
            gather.say(text)
        if terminal.on_timeout:
            vr.redirect(terminal.on_timeout, method="POST")

    elif isinstance(terminal, GatherDigits):
        gather = vr.gather(
            num_digits=terminal.num_digits,
            action=terminal.action,
            method="POST",
            timeout=terminal.timeout or config.digit_timeout_seconds,
        )
        for text in prompt.says:
            gather.say(text)
        if terminal.on_timeout:
            vr.redirect(terminal.on_timeout, method="POST")

    elif isinstance(terminal, Hangup):
        for text in prompt.says:
            vr.say(text)
        vr.hangup()

    else:
        for text in prompt.says:
            vr.say(text)
        vr.redirect(terminal.url, method="POST")

    return vr.to_xml()
