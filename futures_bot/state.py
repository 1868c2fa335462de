import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from .config import BotConfig
from .models import Position


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


# ========================= PERSISTENCE =========================
class PositionStore:
    """JSON snapshot of the position table, keyed by symbol."""

    def __init__(self, path: str = "positions.json"):
        self.path = path

    def save(self, positions: Dict[str, Position]):
        data = {sym: pos.to_dict() for sym, pos in positions.items()}
        try:
            if os.path.exists(self.path):
                try:
                    os.replace(self.path, self.path + ".backup")
                except OSError:
                    pass
            with open(self.path, "w") as f:
                json.dump(data, f, indent=2)
            logging.info(f"💾 Saved {len(data)} position(s) to {self.path}")
        except OSError as e:
            logging.error(f"❌ Failed to save positions: {e}")

    def load(self) -> Dict[str, Position]:
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            logging.info(f"⚠️ No saved positions at {self.path} - starting fresh")
            return {}
        except json.JSONDecodeError:
            logging.error(f"❌ Corrupt {self.path} - starting fresh")
            return {}
        except OSError as e:
            logging.error(f"❌ Failed to load positions: {e}")
            return {}

        if not isinstance(data, dict):
            logging.error(f"❌ Unexpected layout in {self.path} - starting fresh")
            return {}
        positions = {}
        for sym, raw in data.items():
            try:
                positions[sym] = Position.from_dict(sym, raw)
            except (KeyError, TypeError, ValueError) as e:
                logging.error(f"❌ [{sym}] Invalid saved position: {e}")
        logging.info(f"📂 Loaded {len(positions)} position(s) from {self.path}")
        return positions


# ========================= SESSION =========================
@dataclass
class TradingSession:
    """Everything one bot process owns, passed to every component call."""
    config: BotConfig
    gateway: object
    store: PositionStore
    positions: Dict[str, Position] = field(default_factory=dict)
    blacklist: Set[str] = field(default_factory=set)
    locks: Set[str] = field(default_factory=set)
    broadcaster: Optional[object] = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    balance: float = 0.0

    def persist(self):
        self.store.save(self.positions)

    def restore(self):
        self.positions = self.store.load()

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first; True when the stop token fired."""
        if seconds <= 0:
            return self.stop_event.is_set()
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def publish(self, kind: str, payload):
        if self.broadcaster is not None:
            self.broadcaster.publish(kind, payload)
