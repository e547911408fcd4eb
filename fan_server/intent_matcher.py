"""
Rule-based intent matching for fan commands.

NOTE: The matcher is advisory. Its result is logged and handed to the
classifier as a hint, but it never decides what reaches the device.
"""
import logging
import re
from typing import NamedTuple, Optional, Sequence

from .models import Action, Confidence, Device, ParsedCommand, is_valid_speed

logger = logging.getLogger(__name__)


class IntentRule(NamedTuple):
    """One phrase family mapped to a device action."""
    name: str
    pattern: re.Pattern
    device: Device
    action: Action
    confidence: Confidence


def _rule(name: str, pattern: str, device: Device, action: Action, confidence: Confidence) -> IntentRule:
    return IntentRule(name, re.compile(pattern), device, action, confidence)


# Evaluated in order, first match wins.
DEFAULT_RULES: Sequence[IntentRule] = (
    _rule(
        "fan_on",
        r"\b(?:turn\s+)?(?:the\s+)?fan\s+on\b"
        r"|\b(?:start|switch\s+on|turn\s+on)\s+(?:the\s+)?fan\b",
        Device.FAN, Action.ON, Confidence.HIGH,
    ),
    _rule(
        "fan_off",
        r"\b(?:turn\s+)?(?:the\s+)?fan\s+off\b"
        r"|\b(?:stop|switch\s+off|turn\s+off)\s+(?:the\s+)?fan\b",
        Device.FAN, Action.OFF, Confidence.HIGH,
    ),
    # ASCII digits only; a run longer than three digits is never captured
    _rule(
        "fan_speed",
        r"\b(?:set\s+)?(?:the\s+)?fan\s+(?:speed\s+)?(?:to\s+)?([0-9]{1,3})(?![0-9])"
        r"|\b(?:fan\s+)?speed\s+([0-9]{1,3})(?![0-9])",
        Device.FAN, Action.SPEED, Confidence.HIGH,
    ),
    # Lights are not wired to hardware, so at most medium confidence
    _rule(
        "lights_on",
        r"\b(?:turn\s+)?(?:the\s+)?lights?\s+on\b"
        r"|\b(?:switch\s+on|turn\s+on)\s+(?:the\s+)?lights?\b",
        Device.LIGHTS, Action.ON, Confidence.MEDIUM,
    ),
    _rule(
        "lights_off",
        r"\b(?:turn\s+)?(?:the\s+)?lights?\s+off\b"
        r"|\b(?:switch\s+off|turn\s+off)\s+(?:the\s+)?lights?\b",
        Device.LIGHTS, Action.OFF, Confidence.MEDIUM,
    ),
)


class IntentMatcher:
    """Matches free text against an ordered list of intent rules."""

    def __init__(self, rules: Optional[Sequence[IntentRule]] = None):
        """
        Initialize intent matcher.

        Args:
            rules: Ordered rules to evaluate; defaults to DEFAULT_RULES
        """
        self.rules = tuple(rules) if rules is not None else tuple(DEFAULT_RULES)

    def match(self, text: str) -> ParsedCommand:
        """
        Classify text into an advisory command. Never raises.

        Args:
            text: Raw user text

        Returns:
            ParsedCommand; unknown/general/low when no rule matches
        """
        normalized = (text or "").lower().strip()

        for rule in self.rules:
            found = rule.pattern.search(normalized)
            if not found:
                continue

            value = None
            if rule.action == Action.SPEED:
                value = self._extract_speed(found)
                if value is None:
                    logger.debug(f"Rule {rule.name} matched without a usable speed in {normalized!r}")
                    continue

            return ParsedCommand(
                device=rule.device,
                action=rule.action,
                value=value,
                confidence=rule.confidence,
                original_text=text or "",
            )

        return ParsedCommand(
            device=Device.UNKNOWN,
            action=Action.GENERAL,
            confidence=Confidence.LOW,
            original_text=text or "",
        )

    def _extract_speed(self, found: re.Match) -> Optional[int]:
        """Return the first captured integer if it is a valid speed."""
        captured = next((group for group in found.groups() if group is not None), None)
        if captured is None:
            return None
        speed = int(captured)
        return speed if is_valid_speed(speed) else None
