"""
JSON file persistence for the engine state

Two kinds are stored, each in its own file under the data directory:
- settings: BotSettings overrides
- state: balance, positions, history, cooldowns, counters

A persistence failure is logged and never blocks trading.
"""
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from core.bot_state import BotState

logger = logging.getLogger(__name__)

KIND_SETTINGS = 'settings'
KIND_STATE = 'state'
KINDS = (KIND_SETTINGS, KIND_STATE)


class StateStore:
    """save(kind) / load(kind) over JSON files"""

    def __init__(self, state: BotState, data_dir: str = 'data'):
        self.state = state
        self.data_dir = Path(data_dir)
        # One writer per kind so the newest snapshot is the last one replaced
        self._locks = {kind: asyncio.Lock() for kind in KINDS}

    def path_for(self, kind: str) -> Path:
        if kind not in KINDS:
            raise ValueError(f"Unknown persistence kind: {kind}")
        return self.data_dir / f"{kind}.json"

    def _snapshot(self, kind: str) -> Dict[str, Any]:
        if kind == KIND_SETTINGS:
            return self.state.settings.to_dict()
        return self.state.to_dict()

    @staticmethod
    def _write_json(path: Path, payload: Dict[str, Any]):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix('.json.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, path)

    @staticmethod
    def _read_json(path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    async def save(self, kind: str) -> bool:
        """Persist one kind; returns False (and logs) on failure"""
        try:
            path = self.path_for(kind)
            async with self._locks[kind]:
                # Snapshot under the lock so later saves never write older data
                payload = self._snapshot(kind)
                await asyncio.to_thread(self._write_json, path, payload)
            logger.debug(f"💾 Saved {kind} to {path}")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to save {kind}: {e}")
            return False

    async def load(self, kind: str) -> bool:
        """
        Restore one kind into the state

        Returns:
            True when data was found and applied
        """
        try:
            data = await asyncio.to_thread(self._read_json, self.path_for(kind))
        except Exception as e:
            logger.error(f"❌ Failed to load {kind}: {e}")
            return False

        if data is None:
            logger.info(f"No saved {kind} found, using defaults")
            return False

        try:
            if kind == KIND_SETTINGS:
                self.state.replace_settings(self.state.settings.merged(data))
            else:
                self.state.restore(data)
        except Exception as e:
            logger.error(f"❌ Corrupt {kind} file {self.path_for(kind)}: {e}")
            return False

        logger.info(f"✅ Loaded {kind} from {self.path_for(kind)}")
        return True
