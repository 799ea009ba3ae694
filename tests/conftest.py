"""Pytest configuration and shared fixtures."""

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from fixupbot import FixupBot

BOT_ID = 999
AUTHOR_ID = 111
OTHER_ID = 222


def make_user(user_id=AUTHOR_ID, *, bot=False, display_name="Alice", guild_avatar=None):
    """Build a mock author whose avatar assets resolve to predictable URLs."""
    user = MagicMock()
    user.id = user_id
    user.bot = bot
    user.name = display_name.lower()
    user.display_name = display_name
    user.guild_avatar = guild_avatar
    user.display_avatar.replace.return_value.url = f"https://cdn.example/avatars/{user_id}.png"
    user.__str__.return_value = display_name
    return user


def make_webhook(owner_id=BOT_ID, sent_id=555):
    webhook = MagicMock()
    webhook.id = 4242
    webhook.type = discord.WebhookType.incoming
    webhook.user.id = owner_id
    webhook.send = AsyncMock(return_value=MagicMock(id=sent_id))
    return webhook


def make_channel(webhooks=None, channel_id=10):
    channel = MagicMock(spec=discord.TextChannel)
    channel.id = channel_id
    channel.webhooks = AsyncMock(return_value=list(webhooks or []))
    channel.create_webhook = AsyncMock(return_value=make_webhook())
    return channel


def make_message(content, *, author=None, channel=None, message_id=1000, attachments=None):
    message = MagicMock()
    message.id = message_id
    message.content = content
    message.author = author or make_user()
    message.channel = channel or make_channel([make_webhook()])
    message.guild = MagicMock()
    message.webhook_id = None
    message.attachments = list(attachments or [])
    message.delete = AsyncMock()
    return message


@pytest.fixture
def client():
    client = MagicMock()
    client.user.id = BOT_ID
    client.user.display_avatar.read = AsyncMock(return_value=b"avatar-bytes")
    client.get_user.return_value = None
    client.get_channel.return_value = None
    client.is_closed.return_value = False
    client.close = AsyncMock()
    return client


@pytest.fixture
def make_bot(client):
    def _make(**overrides):
        config = {"token": "test-token", "retract_mode": "both"}
        config.update(overrides)
        return FixupBot(config, client=client)
    return _make


@pytest.fixture
def bot(make_bot):
    return make_bot()
