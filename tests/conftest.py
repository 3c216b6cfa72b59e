"""Shared fakes for the statistics bot tests.

The fakes model just enough of ``discord.Guild`` and its channels for the
reconciler: lookups go through plain lists, and every remote call is an
``AsyncMock`` so tests can count creates and renames.
"""

import itertools
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

_ids = itertools.count(1000)


class FakeChannel:
    def __init__(self, name, position=0, category_id=None):
        self.id = next(_ids)
        self.name = name
        self.position = position
        self.category_id = category_id
        self.edit = AsyncMock(side_effect=self._apply_edit)

    async def _apply_edit(self, *, reason=None, **fields):
        for key, value in fields.items():
            setattr(self, key, value)


class FakeGuild:
    def __init__(self, humans=0, bots=0, member_count=None, name="Test Guild"):
        self.id = 4242
        self.name = name
        self.members = [make_member(False) for _ in range(humans)] + [
            make_member(True) for _ in range(bots)
        ]
        self.member_count = (
            len(self.members) if member_count is None else member_count
        )
        self.default_role = discord.Object(id=self.id)
        self.categories = []
        self.voice_channels = []

        self.chunk = AsyncMock(side_effect=self._chunk)
        self.create_category = AsyncMock(side_effect=self._create_category)
        self.create_voice_channel = AsyncMock(side_effect=self._create_voice_channel)

    async def _chunk(self, *, cache=True):
        return list(self.members)

    async def _create_category(self, *, name, position=0, reason=None):
        category = FakeChannel(name, position=position)
        self.categories.insert(position, category)
        return category

    async def _create_voice_channel(
        self, *, name, category=None, overwrites=None, reason=None
    ):
        channel = FakeChannel(name, category_id=category.id if category else None)
        channel.overwrites = overwrites
        self.voice_channels.append(channel)
        return channel

    def add_category(self, name, position=0):
        category = FakeChannel(name, position=position)
        self.categories.append(category)
        return category

    def add_voice_channel(self, name, category):
        channel = FakeChannel(name, category_id=category.id)
        self.voice_channels.append(channel)
        return channel

    def remote_calls(self):
        """Total number of mutating calls made against the guild and its channels."""
        edits = sum(
            c.edit.await_count for c in self.categories + self.voice_channels
        )
        return (
            self.create_category.await_count
            + self.create_voice_channel.await_count
            + edits
        )


def make_member(bot):
    return SimpleNamespace(bot=bot)


def http_error(status=429, message="You are being rate limited."):
    return discord.HTTPException(MagicMock(status=status, reason="error"), message)


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep audit.log and config.yaml out of the repository."""
    monkeypatch.chdir(tmp_path)
    return tmp_path
