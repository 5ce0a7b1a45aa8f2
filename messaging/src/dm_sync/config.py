from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .agent import DEFAULT_AGENT_ID, DEFAULT_REPLY_DELAY_S
from .presence import DEFAULT_TYPING_TIMEOUT_S

logger = logging.getLogger(__name__)

QUICK_REACTIONS: Tuple[str, ...] = ("❤️", "😂", "😮", "😢", "😡", "👍")


@dataclass
class EngineConfig:
    typing_timeout_s: float = DEFAULT_TYPING_TIMEOUT_S
    agent_user_id: str = DEFAULT_AGENT_ID
    agent_reply_delay_s: float = DEFAULT_REPLY_DELAY_S
    agent_seed: Optional[int] = None
    conversation_list_limit: int = 50
    preview_length: int = 30
    quick_reactions: Tuple[str, ...] = QUICK_REACTIONS

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if "quick_reactions" in values:
            values["quick_reactions"] = tuple(values["quick_reactions"])
        return cls(**values)


def load_config(path: Path | str | None) -> EngineConfig:
    """Load engine settings from a JSON file, falling back to defaults."""

    if path is None:
        return EngineConfig()
    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return EngineConfig()
    except json.JSONDecodeError:
        logger.warning("ignoring unreadable config file %s", path)
        return EngineConfig()
    if not isinstance(data, dict):
        return EngineConfig()
    return EngineConfig.from_mapping(data)
