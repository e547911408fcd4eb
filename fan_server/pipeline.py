"""
Command pipeline: text in, at most one fan command out.

    text -> IntentMatcher (advisory)
         -> ConstrainedClassifier (authoritative reply)
         -> parse_constrained_reply -> reconcile
         -> CommandDispatcher -> device link

Classifier failures propagate to the caller, and nothing is dispatched.
An unavailable device link only turns `sent` to False.
"""
import logging
from typing import Optional

from .classifier import ConstrainedClassifier, parse_constrained_reply
from .dispatcher import CommandDispatcher
from .integration.base import DeviceLink
from .intent_matcher import IntentMatcher
from .models import PipelineResult
from .reconciler import reconcile

logger = logging.getLogger(__name__)


class CommandPipeline:
    """Wires the matcher, classifier, reconciler and dispatcher together."""

    def __init__(
        self,
        classifier: ConstrainedClassifier,
        link: DeviceLink,
        matcher: Optional[IntentMatcher] = None,
        dispatcher: Optional[CommandDispatcher] = None,
    ):
        self.classifier = classifier
        self.link = link
        self.matcher = matcher or IntentMatcher()
        self.dispatcher = dispatcher or CommandDispatcher(link)

    async def process(self, text: str, context: Optional[str] = None) -> PipelineResult:
        """
        Classify, reconcile and dispatch one utterance.

        Raises:
            ClassifierError: the classifier failed or timed out.
        """
        advisory = self.matcher.match(text)
        logger.info(
            f"Initial parsed command: {advisory.device.value}/{advisory.action.value} "
            f"value={advisory.value} ({advisory.confidence.value})"
        )

        reply = await self.classifier.classify(text, context=context, advisory=advisory)
        final = reconcile(advisory, parse_constrained_reply(reply))
        sent = self.dispatcher.dispatch(final)

        return PipelineResult(advisory=advisory, final=final, reply=reply, sent=sent)
