#!/usr/bin/env python3
import argparse
import asyncio
import aiohttp
import logging
import os
import re
import time
from collections import OrderedDict, defaultdict
from typing import Optional, Dict, Any, List, Mapping, Tuple

import discord
from dotenv import load_dotenv

# -----------------------------
# Constants
# -----------------------------
DEFAULT_TARGET_DOMAIN = "fixupx.com"
WEBHOOK_NAME = "FixupBot Webhook"
WEBHOOK_USERNAME_LIMIT = 80       # Discord caps webhook usernames at 80 chars
AVATAR_FORMAT = "png"
AVATAR_SIZE = 1024

DELETE_EMOJIS = ("❌",)
DELETE_BUTTON_LABEL = "Delete"
DELETE_BUTTON_PREFIX = "fixup:delete:"
DENIED_NOTICE = "Only the original author can delete this message."
DELETE_FAILED_NOTICE = "Couldn't delete this message. It may already be gone."

# Ownership table limits
OWNER_CACHE_SIZE = 1000            # Max relayed message -> author entries
OWNER_MAX_AGE = 7 * 24 * 60 * 60   # Forget entries after a week (0 = never)
OWNER_CLEANUP_INTERVAL = 300       # Prune every 5 minutes

RETRACT_MODES = ("reaction", "button", "both")
REQUIRED_ENV_VARS = ["DISCORD_TOKEN"]

# Guild channels with a text chat. Threads post through their parent.
RELAY_CHANNEL_TYPES = (
    discord.TextChannel, discord.VoiceChannel, discord.StageChannel, discord.Thread)

# Errors raised by platform calls; anything else is a bug and goes to on_error.
API_ERRORS = (discord.DiscordException, aiohttp.ClientError, asyncio.TimeoutError)

logger = logging.getLogger(__name__)

# -----------------------------
# Link detection / rewriting
# -----------------------------
TWITTER_LINK_RE = re.compile(
    r"(?P<scheme>https?://)"
    r"(?P<host>(?:www\.)?(?:twitter\.com|x\.com))"
    r"(?P<path>/[a-z0-9_]+/status/[0-9]+(?:\?[\w=&-]+)?)",
    re.IGNORECASE)


def find_links(text: str) -> List[re.Match]:
    if not text:
        return []
    return list(TWITTER_LINK_RE.finditer(text))


def rewrite_links(text: str, target_domain: str = DEFAULT_TARGET_DOMAIN) -> Optional[str]:
    """Swap the host of every Twitter/X status link for ``target_domain``.

    Returns None when the text holds no status link, so callers can treat
    that as "nothing to relay". Handle, status id and query string are kept
    as written.
    """
    if not find_links(text):
        return None
    return TWITTER_LINK_RE.sub(
        lambda m: f"{m.group('scheme')}{target_domain}{m.group('path')}",
        text)


# -----------------------------
# Identity helpers
# -----------------------------


def avatar_url_for(author: discord.abc.User) -> str:
    # Per-guild avatar wins over the account avatar
    asset = getattr(author, "guild_avatar", None) or author.display_avatar
    return asset.replace(format=AVATAR_FORMAT, size=AVATAR_SIZE).url


def sender_name_for(author: discord.abc.User) -> str:
    name = author.display_name or author.name
    return name[:WEBHOOK_USERNAME_LIMIT]


def delete_button_id(author_id: int) -> str:
    return f"{DELETE_BUTTON_PREFIX}{int(author_id)}"


def parse_delete_button_id(custom_id: Optional[str]) -> Optional[int]:
    if not custom_id or not custom_id.startswith(DELETE_BUTTON_PREFIX):
        return None
    raw = custom_id[len(DELETE_BUTTON_PREFIX):]
    if not raw.isdigit():
        return None
    return int(raw)


def build_delete_view(author_id: int) -> discord.ui.View:
    """Delete button for a relayed message.

    Clicks are handled in on_interaction, never by the view itself, so the
    view is stopped before sending and the client keeps nothing per message.
    """
    view = discord.ui.View(timeout=None)
    view.add_item(discord.ui.Button(
        label=DELETE_BUTTON_LABEL,
        style=discord.ButtonStyle.danger,
        custom_id=delete_button_id(author_id)))
    view.stop()
    return view

# -----------------------------
# Ownership table (memory bounded)
# -----------------------------


class OwnershipTable:
    """Relayed message id -> original author id, bounded by size and age."""

    def __init__(self, maxsize: int = OWNER_CACHE_SIZE, max_age: float = OWNER_MAX_AGE):
        self.maxsize = maxsize
        self.max_age = max_age
        self.data: "OrderedDict[int, Tuple[int, float]]" = OrderedDict()

    def record(self, message_id: int, author_id: int):
        self.data.pop(message_id, None)
        self.data[message_id] = (author_id, time.time())
        while len(self.data) > self.maxsize:
            self.data.popitem(last=False)

    def owner_of(self, message_id: int) -> Optional[int]:
        entry = self.data.get(message_id)
        if entry is None:
            return None
        author_id, recorded_at = entry
        if self._expired(recorded_at, time.time()):
            self.data.pop(message_id, None)
            return None
        return author_id

    def is_owner(self, message_id: int, user_id: int) -> bool:
        owner_id = self.owner_of(message_id)
        return owner_id is not None and owner_id == user_id

    def forget(self, message_id: int) -> Optional[int]:
        entry = self.data.pop(message_id, None)
        return entry[0] if entry else None

    def cleanup_old_entries(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        removed = 0
        while len(self.data) > self.maxsize:
            self.data.popitem(last=False)
            removed += 1
        # insertion order == age order, so stop at the first fresh entry
        while self.data:
            message_id, (_, recorded_at) = next(iter(self.data.items()))
            if not self._expired(recorded_at, now):
                break
            self.data.pop(message_id)
            removed += 1
        return removed

    def _expired(self, recorded_at: float, now: float) -> bool:
        return bool(self.max_age) and now - recorded_at > self.max_age

    def __contains__(self, message_id):
        return self.owner_of(message_id) is not None

    def __len__(self):
        return len(self.data)

# -----------------------------
# FixupBot
# -----------------------------


class FixupBot:
    def __init__(self, config: Dict[str, Any], client: Optional[discord.Client] = None):
        self.token = config["token"]
        self.target_domain = config.get("target_domain", DEFAULT_TARGET_DOMAIN)
        retract_mode = config.get("retract_mode", "both")
        self.reaction_retraction = retract_mode in ("reaction", "both")
        self.button_retraction = retract_mode in ("button", "both")

        if client is None:
            intents = discord.Intents.default()
            intents.message_content = True
            intents.members = True  # guild avatars / nicknames
            client = discord.Client(intents=intents)
        self.client = client

        self.owners = OwnershipTable(
            maxsize=config.get("owner_cache_size", OWNER_CACHE_SIZE),
            max_age=config.get("owner_max_age", OWNER_MAX_AGE))

        # one webhook lookup/creation at a time per channel
        self._webhook_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

        self.cleanup_task: Optional[asyncio.Task] = None
        self.shutdown_event = asyncio.Event()

        self.setup_bot()

    def setup_bot(self):
        @self.client.event
        async def on_ready():
            logger.info(
                f"🤖 Logged in as {self.client.user} (id={self.client.user.id})")
            if not self.cleanup_task or self.cleanup_task.done():
                self.cleanup_task = asyncio.create_task(self.cleanup_loop())

        @self.client.event
        async def on_message(message: discord.Message):
            await self.relay_message(message)

        if self.reaction_retraction:
            @self.client.event
            async def on_raw_reaction_add(payload: discord.RawReactionActionEvent):
                await self.handle_reaction(payload)

        if self.button_retraction:
            @self.client.event
            async def on_interaction(interaction: discord.Interaction):
                await self.handle_interaction(interaction)

    async def cleanup_loop(self):
        """Periodic pruning of stale ownership entries"""
        try:
            while not self.shutdown_event.is_set():
                await asyncio.sleep(OWNER_CLEANUP_INTERVAL)
                removed = self.owners.cleanup_old_entries()
                if removed > 0:
                    logger.info(
                        f"🧹 Cleaned up {removed} old ownership entries")
        except asyncio.CancelledError:
            logger.debug("Cleanup task cancelled")

    # -------- Webhooks --------
    async def resolve_webhook(self, channel) -> discord.Webhook:
        """Return the bot's webhook for ``channel``, creating it on first use.

        Threads share their parent's webhook.
        """
        base = channel.parent if isinstance(channel, discord.Thread) else channel
        if base is None:
            raise discord.ClientException(
                f"Parent of thread {channel.id} is not available")

        bot_user = self.client.user
        async with self._webhook_locks[base.id]:
            for webhook in await base.webhooks():
                if webhook.type is not discord.WebhookType.incoming:
                    continue
                if webhook.user and webhook.user.id == bot_user.id:
                    return webhook

            avatar = await bot_user.display_avatar.read()
            webhook = await base.create_webhook(
                name=WEBHOOK_NAME, avatar=avatar, reason="Link relay")
            logger.info(f"🪝 Created webhook in #{base} (id={webhook.id})")
            return webhook

    # -------- Relay --------
    def should_relay(self, message: discord.Message) -> bool:
        if message.author.bot or message.webhook_id is not None:
            return False
        if message.guild is None:
            return False
        return isinstance(message.channel, RELAY_CHANNEL_TYPES)

    async def relay_message(self, message: discord.Message) -> Optional[discord.WebhookMessage]:
        if not self.should_relay(message):
            return None
        content = rewrite_links(message.content, self.target_domain)
        if content is None:
            return None

        author = message.author
        channel = message.channel
        avatar_url = avatar_url_for(author)
        logger.info(
            f"🔁 Relaying message {message.id} from {author} in #{channel} (avatar: {avatar_url})")

        try:
            webhook = await self.resolve_webhook(channel)
            kwargs: Dict[str, Any] = {
                "content": content,
                "username": sender_name_for(author),
                "avatar_url": avatar_url,
                "allowed_mentions": discord.AllowedMentions.none(),
                "wait": True,
            }
            if message.attachments:
                kwargs["files"] = [await att.to_file() for att in message.attachments]
            if isinstance(channel, discord.Thread):
                kwargs["thread"] = channel
            if self.button_retraction:
                kwargs["view"] = build_delete_view(author.id)
            sent = await webhook.send(**kwargs)
        except API_ERRORS as e:
            logger.error(f"❌ Failed to relay message {message.id}: {e}")
            return None

        if self.reaction_retraction:
            self.owners.record(sent.id, author.id)

        try:
            await message.delete()
        except API_ERRORS as e:
            logger.error(
                f"❌ Relayed as {sent.id} but could not delete original {message.id}: {e}")
            return sent

        logger.info(f"✅ Relayed message {message.id} -> {sent.id}")
        return sent

    # -------- Retraction: reactions --------
    async def handle_reaction(self, payload: discord.RawReactionActionEvent):
        bot_user = self.client.user
        if bot_user and payload.user_id == bot_user.id:
            return
        if not payload.emoji.is_unicode_emoji() or payload.emoji.name not in DELETE_EMOJIS:
            return

        owner_id = self.owners.owner_of(payload.message_id)
        if owner_id is None:
            return

        # raw events only carry a member in guilds; otherwise fetch the user
        user = payload.member
        if user is None:
            try:
                user = self.client.get_user(payload.user_id) or await self.client.fetch_user(payload.user_id)
            except API_ERRORS as e:
                logger.error(
                    f"Something went wrong when fetching reactor {payload.user_id}: {e}")
                return

        if user.bot:
            return
        if user.id != owner_id:
            logger.debug(
                f"Ignoring delete reaction by {user.id} on {payload.message_id} (owner {owner_id})")
            return

        try:
            channel = self.client.get_channel(payload.channel_id) or await self.client.fetch_channel(payload.channel_id)
            await channel.get_partial_message(payload.message_id).delete()
        except discord.NotFound:
            logger.debug(f"Message {payload.message_id} already deleted")
        except API_ERRORS as e:
            logger.error(
                f"❌ Error deleting message {payload.message_id} via reaction: {e}")
            return

        self.owners.forget(payload.message_id)
        logger.info(
            f"🗑️ Deleted relayed message {payload.message_id} on request of {user.id}")

    # -------- Retraction: buttons --------
    async def handle_interaction(self, interaction: discord.Interaction):
        if interaction.type is not discord.InteractionType.component:
            return
        custom_id = (interaction.data or {}).get("custom_id")
        author_id = parse_delete_button_id(custom_id)
        if author_id is None:
            return

        if interaction.user.id != author_id:
            await self._reply_ephemeral(interaction, DENIED_NOTICE)
            return

        try:
            await interaction.response.defer()
        except API_ERRORS as e:
            logger.debug(f"Could not acknowledge interaction {interaction.id}: {e}")

        message = interaction.message
        try:
            await message.delete()
        except API_ERRORS as e:
            logger.warning(
                f"Could not delete message {message.id} via button: {e}")
            # followup when already acknowledged, initial response otherwise
            await self._reply_ephemeral(interaction, DELETE_FAILED_NOTICE)
            return

        self.owners.forget(message.id)
        logger.info(
            f"🗑️ Deleted relayed message {message.id} on request of {author_id}")

    async def _reply_ephemeral(self, interaction: discord.Interaction, text: str):
        try:
            if interaction.response.is_done():
                await interaction.followup.send(text, ephemeral=True)
            else:
                await interaction.response.send_message(text, ephemeral=True)
        except API_ERRORS as e:
            logger.error(f"Failed to answer interaction {interaction.id}: {e}")

    # -------- Lifecycle --------
    async def cleanup(self):
        self.shutdown_event.set()

        if self.cleanup_task and not self.cleanup_task.done():
            self.cleanup_task.cancel()
            try:
                await self.cleanup_task
            except asyncio.CancelledError:
                pass

        if not self.client.is_closed():
            await self.client.close()

    async def start(self):
        await self.client.start(self.token)

# -----------------------------
# CLI / env
# -----------------------------


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Relay Twitter/X links through an embed-friendly mirror")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging")
    parser.add_argument("--env", type=str, default=".env",
                        help="Path to .env file (default: .env)")
    return parser.parse_args(argv)


def setup_logging(debug: bool = False):
    handlers = [logging.StreamHandler()]
    if os.getenv("ENABLE_FILE_LOGGING", "false").lower() == "true":
        handlers.append(logging.FileHandler("fixupbot.log"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers
    )
    if debug:
        logger.debug("Debug mode enabled")
        logging.getLogger("discord.gateway").setLevel(logging.INFO)
        logging.getLogger("discord.http").setLevel(logging.INFO)


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


def load_config(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    for v in REQUIRED_ENV_VARS:
        if not env.get(v):
            raise ValueError(f"Required environment variable {v} is not set")

    retract_mode = env.get("RETRACT_MODE", "both").strip().lower()
    if retract_mode not in RETRACT_MODES:
        raise ValueError(
            f"RETRACT_MODE must be one of {', '.join(RETRACT_MODES)}, got {retract_mode!r}")

    cache_size = _int_env(env, "OWNER_CACHE_SIZE", OWNER_CACHE_SIZE)
    if cache_size < 1:
        raise ValueError("OWNER_CACHE_SIZE must be at least 1")

    return {
        "token": env["DISCORD_TOKEN"],
        "target_domain": env.get("FIXUP_DOMAIN") or DEFAULT_TARGET_DOMAIN,
        "retract_mode": retract_mode,
        "owner_cache_size": cache_size,
        "owner_max_age": max(0, _int_env(env, "OWNER_MAX_AGE", OWNER_MAX_AGE)),
    }

# -------- Main --------


async def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)
    load_dotenv(args.env)
    setup_logging(args.debug)

    logger.info(f"Using .env file: {args.env}")
    config = load_config()
    logger.info(f"Rewriting links to: {config['target_domain']}")
    logger.info(f"Retraction mode: {config['retract_mode']}")

    bot = FixupBot(config)
    try:
        await bot.start()
    except discord.LoginFailure as e:
        logger.error(f"❌ Discord rejected the bot token: {e}")
    finally:
        await bot.cleanup()


def run(argv: Optional[List[str]] = None):
    try:
        asyncio.run(main(argv))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")


if __name__ == "__main__":
    run()
