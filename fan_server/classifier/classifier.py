"""
Constrained classifier.

Single LLM invocation whose answer space is restricted to three literal
commands:
  - "fan on"
  - "fan off"
  - "fan speed N"  (N in 1..5)

The reply is parsed strictly. Anything outside that grammar is rejected
as "no command"; nothing is repaired, guessed, or clamped.

Default model: configurable via CLASSIFIER_MODEL env var.
"""
import asyncio
import logging
import re
from pathlib import Path
from typing import Optional

from langchain_ollama import OllamaLLM

from ..models import Action, Device, FinalCommand, ParsedCommand, is_valid_speed

logger = logging.getLogger(__name__)

FALLBACK_FAN_OFF = "fan_off"
FALLBACK_NO_COMMAND = "no_command"
UNRECOGNIZED_POLICIES = (FALLBACK_FAN_OFF, FALLBACK_NO_COMMAND)

# Reply used under the no_command policy; never parses to a command
NO_COMMAND_REPLY = "none"

# ASCII digits only, at most three; longer runs are never a valid speed
_SPEED_REPLY = re.compile(r"^fan speed ([0-9]{1,3})$")

_FALLBACK_RULES = {
    FALLBACK_FAN_OFF: (
        '- If the user asks about anything else (lights, temperature, weather, chat), respond: "fan off"'
    ),
    FALLBACK_NO_COMMAND: (
        '- If the user asks about anything else (lights, temperature, weather, chat), respond: "none"'
    ),
}

# Default classifier prompt (used when prompt file is not found)
DEFAULT_CLASSIFIER_PROMPT = """You are a smart home automation system that ONLY controls a fan.

STRICT RULES:
- You can ONLY respond with these exact commands:
  1. "fan on"
  2. "fan off"
  3. "fan speed 1" (or 2, 3, 4, 5)

- If the user says anything about turning on/starting the fan, respond: "fan on"
- If the user says anything about turning off/stopping the fan, respond: "fan off"
- If the user mentions a specific speed (1-5), respond: "fan speed X" where X is the number
- If the user mentions "low speed" or "slow", respond: "fan speed 1"
- If the user mentions "medium speed", respond: "fan speed 3"
- If the user mentions "high speed", "fast", or "maximum", respond: "fan speed 5"
{fallback_rule}
{hint}{context}
User said: "{user_input}"

Respond with ONLY one of the allowed commands. No quotes, no punctuation, nothing else."""


class ClassifierError(Exception):
    """Raised when the external text-generation service fails."""


class ClassifierTimeoutError(ClassifierError):
    """Raised when the external text-generation service does not answer in time."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Classifier did not answer within {timeout:.1f}s")


def parse_constrained_reply(reply: Optional[str]) -> Optional[FinalCommand]:
    """
    Parse a classifier reply into a FinalCommand.

    Comparison is case-insensitive on the whitespace-trimmed reply.
    Returns None for anything outside the accepted grammar.
    """
    if not isinstance(reply, str):
        logger.warning(f"Invalid classifier reply: not a string ({type(reply).__name__})")
        return None

    normalized = reply.lower().strip()

    if normalized == "fan on":
        return FinalCommand(device=Device.FAN, action=Action.ON)

    if normalized == "fan off":
        return FinalCommand(device=Device.FAN, action=Action.OFF)

    speed_match = _SPEED_REPLY.match(normalized)
    if speed_match:
        speed = int(speed_match.group(1))
        if is_valid_speed(speed):
            return FinalCommand(device=Device.FAN, action=Action.SPEED, value=speed)
        logger.warning(f"Classifier speed out of range: {speed}")
        return None

    if normalized == NO_COMMAND_REPLY:
        logger.info("Classifier declined to produce a command")
        return None

    logger.warning(f"Invalid classifier reply format: {reply!r}")
    return None


class ConstrainedClassifier:
    """
    Builds the constrained prompt and calls the LLM exactly once.

    The call uses LangChain's async API and is bounded by `timeout`
    seconds. Cancelling it on timeout cancels the HTTP request, so a hung
    model holds no worker thread.
    """

    def __init__(
        self,
        model: str,
        prompt_path: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 16,
        timeout: float = 15.0,
        unrecognized_policy: str = FALLBACK_FAN_OFF,
    ):
        if unrecognized_policy not in UNRECOGNIZED_POLICIES:
            raise ValueError(
                f"Unknown unrecognized_policy {unrecognized_policy!r}, "
                f"expected one of {UNRECOGNIZED_POLICIES}"
            )
        self.model_name = model
        self.timeout = timeout
        self.unrecognized_policy = unrecognized_policy

        prompt_file = Path(prompt_path) if prompt_path else None
        if prompt_file and prompt_file.exists():
            self.prompt_template = prompt_file.read_text(encoding="utf-8")
            logger.info(f"Loaded classifier prompt from {prompt_file}")
        else:
            self.prompt_template = DEFAULT_CLASSIFIER_PROMPT
            logger.info(f"Classifier prompt file not found at {prompt_path!r}, using built-in default")

        # The HTTP client gives up on its own too, so no request outlives the timeout
        self.llm = OllamaLLM(
            model=model,
            temperature=temperature,
            num_predict=max_tokens,
            client_kwargs={"timeout": timeout},
        )

    def render_prompt(
        self,
        text: str,
        context: Optional[str] = None,
        advisory: Optional[ParsedCommand] = None,
    ) -> str:
        """Render the constrained prompt for one user utterance."""
        hint = ""
        if advisory is not None and advisory.device == Device.FAN:
            hint_command = f"fan {advisory.action.value}"
            if advisory.action == Action.SPEED:
                hint_command = f"fan speed {advisory.value}"
            hint = f"\nA keyword matcher suggests: {hint_command} (confidence: {advisory.confidence.value})\n"

        context_section = f"\nAdditional context: {context.strip()}\n" if context and context.strip() else ""

        # Quotes would let the utterance break out of its delimiter
        user_input = (text or "").strip().replace('"', "'")

        return self.prompt_template.format(
            fallback_rule=_FALLBACK_RULES[self.unrecognized_policy],
            hint=hint,
            context=context_section,
            user_input=user_input,
        )

    async def complete(self, prompt: str) -> str:
        """
        Invoke the LLM once with a timeout.

        Raises:
            ClassifierTimeoutError: no answer within self.timeout seconds.
            ClassifierError: the service failed (unreachable, quota, bad model).
        """
        try:
            raw_output = await asyncio.wait_for(self.llm.ainvoke(prompt), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise ClassifierTimeoutError(self.timeout) from exc
        except Exception as exc:
            raise ClassifierError(f"Classifier request failed: {exc}") from exc

        if not isinstance(raw_output, str):
            raw_output = str(raw_output)
        return raw_output.strip()

    async def classify(
        self,
        text: str,
        context: Optional[str] = None,
        advisory: Optional[ParsedCommand] = None,
    ) -> str:
        """
        Ask the classifier for one of the allowed command strings.

        Args:
            text: The user's utterance.
            context: Optional free-form context supplied by the client.
            advisory: Optional intent matcher result, passed as a hint.

        Returns:
            The raw reply line, whitespace-trimmed. Validation is left to
            parse_constrained_reply().
        """
        prompt = self.render_prompt(text=text, context=context, advisory=advisory)
        reply = await self.complete(prompt)
        logger.info(f"Classifier reply: {reply!r}")
        return reply
