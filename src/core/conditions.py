"""Condition evaluation (core domain).

Called only after the rule's trigger type and scope match the event and the
permission filter passed. Malformed condition data never raises: it is logged
and treated as a non-match.
"""

from __future__ import annotations

import fnmatch
import logging

from core.models import (
    HashtagConditions,
    KeywordConditions,
    MessageConditions,
    ReactionConditions,
    Rule,
    TriggerEvent,
)

LOGGER = logging.getLogger(__name__)


def _match_tag(tag: str, pattern: str) -> bool:
    if "*" in pattern:
        return fnmatch.fnmatchcase(tag, pattern)
    return tag == pattern


def matches(rule: Rule, event: TriggerEvent) -> bool:
    """Return True when the event satisfies the rule's trigger conditions.

    - reaction: the emoji is in the allowed set; an empty set matches any emoji.
    - keyword: any keyword is a case-insensitive substring of the content.
    - hashtag: any configured tag (optionally with ``*`` wildcards) is in the
      event's pre-extracted hashtag set.
    - message: always.
    """

    conditions = rule.conditions
    if conditions.trigger_type is not rule.trigger_type:
        LOGGER.warning(
            "Rule %s has %s conditions for a %s trigger; skipping",
            rule.rule_id,
            conditions.trigger_type.value,
            rule.trigger_type.value,
        )
        return False

    if isinstance(conditions, MessageConditions):
        return True

    if isinstance(conditions, ReactionConditions):
        if not event.emoji:
            return False
        if not conditions.allowed_emojis:
            return True
        return event.emoji in conditions.allowed_emojis

    if isinstance(conditions, KeywordConditions):
        if not conditions.keywords:
            LOGGER.warning("Keyword rule %s has no keywords; skipping", rule.rule_id)
            return False
        content = event.content.lower()
        return any(keyword in content for keyword in conditions.keywords)

    if isinstance(conditions, HashtagConditions):
        if not conditions.tags:
            LOGGER.warning("Hashtag rule %s has no tags; skipping", rule.rule_id)
            return False
        hashtags = {tag.lstrip("#").lower() for tag in event.hashtags}
        return any(_match_tag(tag, pattern) for pattern in conditions.tags for tag in hashtags)

    LOGGER.warning("Rule %s has unrecognized conditions %r; skipping", rule.rule_id, conditions)
    return False
