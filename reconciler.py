import discord
import logging
import datetime
from typing import Optional, Dict, List, Sequence, Tuple


def audit_log(message: str):
    """Append a timestamped message to the audit log file."""
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    try:
        with open("audit.log", "a", encoding="utf-8") as f:
            f.write(f"[{timestamp}] {message}\n")
    except Exception as e:
        logging.error(f"Failed to write to audit.log: {e}")


DEFAULT_CATEGORY_NAME = "📊 STATISTICS"

# marker -> label template. Order is the order channels are created in.
DEFAULT_LABEL_FORMATS: Dict[str, str] = {
    "Total": "👥 Total: {count}",
    "Members": "👤 Members: {count}",
    "Bots": "🤖 Bots: {count}",
}


class StatsReconciler:
    """
    Keeps a statistics category and its three locked voice channels in sync
    with a guild's membership.

    Every run looks things up by name. Nothing is cached between runs and
    nothing is ever deleted. Safe to call repeatedly; there is no lock, so
    two overlapping runs can both decide to create the same channel.
    """

    def __init__(
        self,
        category_name: str = DEFAULT_CATEGORY_NAME,
        label_formats: Optional[Dict[str, str]] = None,
    ):
        self.category_name = category_name
        self.label_formats: Dict[str, str] = dict(
            label_formats or DEFAULT_LABEL_FORMATS
        )

    async def reconcile(self, guild: Optional[discord.Guild]) -> None:
        """Create or rename whatever is out of date. Never raises."""
        if guild is None:
            return

        try:
            total, members, bots = await self.count_members(guild)
            labels = self.build_labels(total, members, bots)
            category = await self._ensure_category(guild)
            for label, marker in labels:
                await self._sync_channel(guild, category, label, marker)
        except Exception as e:
            logging.error(
                f"Statistics update failed in guild '{guild.name}' ({guild.id}): {e}",
                exc_info=True,
            )
            audit_log(
                f"Statistics update failed in guild '{guild.name}' ({guild.id}): {e}"
            )

    async def count_members(self, guild: discord.Guild) -> Tuple[int, int, int]:
        """Return (total, humans, bots) for the guild."""
        roster = await self._fetch_roster(guild)
        bots = sum(1 for m in roster if m.bot)
        members = len(roster) - bots

        # The gateway keeps member_count current, so the total never needs a fetch
        total = guild.member_count
        if total is None:
            total = len(roster)
        return total, members, bots

    def build_labels(self, total: int, members: int, bots: int) -> List[Tuple[str, str]]:
        counts = {"Total": total, "Members": members, "Bots": bots}
        return [
            (template.format(count=counts[marker]), marker)
            for marker, template in self.label_formats.items()
        ]

    async def _fetch_roster(self, guild: discord.Guild) -> Sequence[discord.Member]:
        try:
            return await guild.chunk()
        except Exception as e:
            logging.warning(
                f"[{guild.name}] Could not fetch member list, using cached members: {e}"
            )
            return list(guild.members)

    async def _ensure_category(self, guild: discord.Guild) -> discord.CategoryChannel:
        category = discord.utils.find(
            lambda c: c.name == self.category_name, guild.categories
        )

        if category is None:
            category = await guild.create_category(
                name=self.category_name,
                position=0,
                reason="Create statistics category",
            )
            logging.info(f"[{guild.name}] Created category '{self.category_name}'.")
            audit_log(
                f"Created category '{self.category_name}' in guild '{guild.name}' ({guild.id})."
            )
        elif category.position != 0:
            try:
                await category.edit(position=0, reason="Move statistics category to top")
                audit_log(
                    f"Moved category '{self.category_name}' to the top in guild '{guild.name}' ({guild.id})."
                )
            except discord.HTTPException as e:
                logging.warning(
                    f"[{guild.name}] Failed moving '{self.category_name}' to the top: {e}"
                )
            except Exception as e:
                logging.warning(
                    f"[{guild.name}] Unexpected error moving '{self.category_name}' to the top: {e}",
                    exc_info=True,
                )
        return category

    async def _sync_channel(
        self,
        guild: discord.Guild,
        category: discord.CategoryChannel,
        label: str,
        marker: str,
    ):
        # First match wins; guild.voice_channels is sorted by position
        channel = discord.utils.find(
            lambda c: c.category_id == category.id and marker in c.name,
            guild.voice_channels,
        )

        if channel is None:
            overwrites = {
                guild.default_role: discord.PermissionOverwrite(connect=False)
            }
            channel = await guild.create_voice_channel(
                name=label,
                category=category,
                overwrites=overwrites,
                reason="Create statistics channel",
            )
            logging.info(f"[{guild.name}] Created statistics channel '{label}'.")
            audit_log(
                f"Created statistics channel '{label}' in guild '{guild.name}' ({guild.id})."
            )
            return

        if channel.name == label:
            return

        old_name = channel.name
        try:
            await channel.edit(name=label, reason="Update statistics")
            logging.info(f"[{guild.name}] Renamed '{old_name}' to '{label}'.")
            audit_log(
                f"Renamed statistics channel to '{label}' in guild '{guild.name}' ({guild.id})."
            )
        except discord.HTTPException as e:
            # Voice channel renames are heavily rate limited; the next trigger will retry
            logging.error(f"[{guild.name}] Rename to '{label}' failed: {e}")
        except Exception as e:
            logging.warning(
                f"[{guild.name}] Unexpected error renaming to '{label}': {e}",
                exc_info=True,
            )
