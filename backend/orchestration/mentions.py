"""
Name and emoji mention matching, speaker aliasing and the avatar-to-avatar
mention cascade.
"""

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Iterable, List, Optional, Set

from domain.collaborators import IdentityStore
from domain.contexts import Avatar, ChannelMessageView, ResponseOptions

if TYPE_CHECKING:
    from .leases import ResponseLock
    from .presence import PresenceService
    from .response_generator import ResponseGenerator
    from .threads import ConversationThreadService

logger = logging.getLogger("MentionCascade")

# Extended pictographic ranges plus variation selectors and ZWJ
_EMOJI_RE = re.compile(
    "["
    "\U0001f000-\U0001faff"
    "\U00002600-\U000027bf"
    "\U00002b00-\U00002bff"
    "\U0000fe0f"
    "\U0000200d"
    "]+"
)
_WORD_NAME_RE = re.compile(r"^[\w'-]+$")


def strip_emojis(value) -> str:
    if value is None:
        return ""
    return re.sub(r"\s+", " ", _EMOJI_RE.sub("", str(value))).strip()


def normalize_alias(value) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def _add(aliases: Set[str], value) -> None:
    normalized = normalize_alias(value)
    if normalized:
        aliases.add(normalized)


def get_avatar_aliases(avatar: Avatar) -> Set[str]:
    """Every normalized name an avatar's messages may appear under."""
    aliases: Set[str] = set()
    if avatar is None:
        return aliases
    _add(aliases, avatar.id)
    _add(aliases, avatar.name)
    _add(aliases, strip_emojis(avatar.name))
    if avatar.emoji:
        _add(aliases, f"{avatar.name or ''}{avatar.emoji}")
        _add(aliases, f"{avatar.emoji}{avatar.name or ''}")
    _add(aliases, avatar.display_name)
    _add(aliases, strip_emojis(avatar.display_name))
    for alias in avatar.aliases or []:
        _add(aliases, alias)
        _add(aliases, strip_emojis(alias))
    return aliases


def extract_speaker_aliases(message: ChannelMessageView) -> Set[str]:
    aliases: Set[str] = set()
    if message is None:
        return aliases
    _add(aliases, message.author_id)
    _add(aliases, message.author_name)
    _add(aliases, strip_emojis(message.author_name))
    _add(aliases, message.display_name)
    _add(aliases, strip_emojis(message.display_name))
    _add(aliases, message.nickname)
    _add(aliases, strip_emojis(message.nickname))
    _add(aliases, message.webhook_id)
    return aliases


def name_mentioned(content_lower: str, name: str) -> bool:
    """
    Word-boundary match for plain word names, substring match otherwise
    (multi-word names, CJK, emoji).
    """
    name_lower = name.strip().lower()
    if not name_lower:
        return False
    if _WORD_NAME_RE.match(name_lower):
        pattern = rf"(?:^|[^\w]){re.escape(name_lower)}(?:$|[^\w])"
        return re.search(pattern, content_lower) is not None
    return name_lower in content_lower


def find_mentioned_avatars(content: str, avatars: Iterable[Avatar], exclude_id: Optional[str] = None) -> List[Avatar]:
    """Avatars whose name, alias or emoji appears in content, in input order."""
    lower = (content or "").lower()
    if not lower:
        return []
    mentioned = []
    for avatar in avatars:
        if avatar is None or (exclude_id and str(avatar.id) == str(exclude_id)):
            continue
        names = [avatar.name] + list(avatar.aliases or [])
        matched = any(name_mentioned(lower, n) for n in names if n)
        if not matched and avatar.emoji:
            emoji = avatar.emoji.strip().lower()
            matched = bool(emoji) and emoji in lower
        if matched:
            mentioned.append(avatar)
    return mentioned


class MentionCascade:
    """
    Lets an avatar that names another avatar get an immediate reply from it.

    Cascades run only from original sends (depth 0) and never recurse: the
    reply is produced with depth + 1, which is a no-op here.
    """

    MAX_DEPTH = 1

    def __init__(
        self,
        identity: IdentityStore,
        presence: "PresenceService",
        threads: "ConversationThreadService",
        response_lock: "ResponseLock",
        limit: int = 1,
    ):
        self.identity = identity
        self.presence = presence
        self.threads = threads
        self.response_lock = response_lock
        self.limit = limit
        self.generator: Optional["ResponseGenerator"] = None

    def bind(self, generator: "ResponseGenerator") -> None:
        self.generator = generator

    async def run(self, channel_id: str, speaker: Avatar, text: str, trigger_key: str, depth: int = 0) -> int:
        """
        Returns:
            Number of cascade replies sent
        """
        if depth >= self.MAX_DEPTH or not text or speaker is None or self.generator is None:
            return 0

        try:
            others = await self.identity.get_avatars_in_channel(channel_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Mention cascade could not load avatars for {channel_id}: {e}")
            return 0

        targets = find_mentioned_avatars(text, others or [], exclude_id=speaker.id)[: max(0, self.limit)]
        sent = 0
        for target in targets:
            target_id = str(target.id)
            try:
                await self.presence.ensure_presence(channel_id, target_id)
                await self.presence.record_mention(channel_id, target_id)
                record = await self.presence.get(channel_id, target_id)
                if not record or not record.new_summon_turns_remaining:
                    await self.presence.grant_new_summon_turns(channel_id, target_id, 1)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Presence bump failed for cascade target {target.name}: {e}")

            thread = self.threads.start_thread(channel_id, [speaker.id, target_id], last_speaker_id=speaker.id)

            async with self.response_lock.held(channel_id, target_id) as acquired:
                if not acquired:
                    logger.debug(f"Cascade target {target.name} busy in {channel_id}")
                    continue
                try:
                    result = await self.generator.respond(
                        channel_id,
                        target,
                        None,
                        ResponseOptions(
                            trigger_key=trigger_key,
                            override_cooldown=True,
                            cascade_depth=depth + 1,
                            thread_id=thread.id,
                        ),
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"⚠️ Mention cascade send failed for {target.name}: {e}")
                    continue

            if result is not None:
                self.threads.record_turn(channel_id, target_id, thread.id)
                sent += 1
                logger.info(f"🔁 {speaker.name} -> {target.name} cascade reply in {channel_id}")
        return sent
