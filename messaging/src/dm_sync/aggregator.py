from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional

from .keys import partner_of
from .models import ConversationSummary, Message, Profile

logger = logging.getLogger(__name__)


def aggregate(
    raw_messages: Iterable[Message],
    self_id: str,
    profiles: Optional[Mapping[str, Profile]] = None,
) -> List[ConversationSummary]:
    """Collapse a most-recent-first message log into one summary per partner.

    The first message seen for a partner is its latest; later ones for the
    same partner are skipped. Output keeps input order.
    """

    seen: Dict[str, ConversationSummary] = {}
    for message in raw_messages:
        try:
            partner_id = partner_of(message.conversation_key, self_id)
        except ValueError:
            logger.debug("skipping message %s not involving %s", message.id, self_id)
            continue
        if partner_id in seen:
            continue
        seen[partner_id] = ConversationSummary(
            partner_id=partner_id,
            partner_profile=(profiles or {}).get(partner_id),
            last_message=message,
            last_message_at=message.created_at,
        )
    return list(seen.values())


async def load_conversations(
    store,
    self_id: str,
    profiles: Optional[Mapping[str, Profile]] = None,
    limit: int = 50,
) -> List[ConversationSummary]:
    recent = await store.list_recent(self_id, limit)
    return aggregate(recent, self_id, profiles)
