import discord
import logging
import yaml
import asyncio
import datetime
from discord import app_commands
from discord.ext import commands, tasks
from typing import Optional, Dict, Any, Set

from reconciler import StatsReconciler, DEFAULT_CATEGORY_NAME


def audit_log(message: str):
    """Append a timestamped message to the audit log file."""
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    try:
        with open("audit.log", "a", encoding="utf-8") as f:
            f.write(f"[{timestamp}] {message}\n")
    except Exception as e:
        logging.error(f"Failed to write to audit.log: {e}")


class ServerStats(commands.Cog):
    """
    Drives the statistics channels for the configured server.
    Reconciles once at startup, on /update, and shortly after every join or leave.
    Settings come from config.yaml, which is never written.
    """

    CONFIG_PATH = "config.yaml"

    def __init__(self, bot: commands.Bot, reconciler: Optional[StatsReconciler] = None):
        self.bot = bot
        self.config: Dict[str, Any] = self._load_config()

        raw_guild_id = self.config.get("guild_id")
        self.guild_id: Optional[int] = int(raw_guild_id) if raw_guild_id else None
        self.category_name: str = self.config.get(
            "stats_category_name", DEFAULT_CATEGORY_NAME
        )
        # Give Discord time to settle its own member count after a join/leave
        self.member_event_delay: float = float(
            self.config.get("stats_member_event_delay_seconds", 15)
        )
        self.refresh_minutes: int = int(self.config.get("stats_refresh_minutes", 0))

        self.reconciler = reconciler or StatsReconciler(category_name=self.category_name)

        self._started = False
        # Delayed updates in flight. Held only so they can be cancelled on unload.
        self._pending: Set[asyncio.Task] = set()

    # ---------------------------
    # Lifecycle
    # ---------------------------

    @commands.Cog.listener()
    async def on_ready(self):
        logging.info("\033[96mServerStats\033[0m cog synced successfully.")
        audit_log("ServerStats cog synced successfully.")

        # on_ready fires again after every reconnect
        if self._started:
            return
        self._started = True

        if self.guild_id is None:
            logging.error("guild_id missing from config.yaml. Statistics are disabled.")
            audit_log("guild_id missing from config.yaml. Statistics are disabled.")
            return

        await self._register_commands()
        await self.reconciler.reconcile(self.bot.get_guild(self.guild_id))

        if self.refresh_minutes > 0 and not self.periodic_refresh.is_running():
            self.periodic_refresh.change_interval(minutes=max(5, self.refresh_minutes))
            self.periodic_refresh.start()

    async def _register_commands(self):
        guild = discord.Object(id=self.guild_id)
        try:
            self.bot.tree.copy_global_to(guild=guild)
            synced_commands = await self.bot.tree.sync(guild=guild)
            logging.info(f"Successfully synced {len(synced_commands)} commands.")
            audit_log(
                f"Successfully synced {len(synced_commands)} slash commands to guild {self.guild_id}."
            )
        except Exception as e:
            logging.error(f"Error syncing application commands: {e}")
            audit_log(f"Error syncing slash commands: {e}")

    # ---------------------------
    # Commands
    # ---------------------------

    @app_commands.command(
        name="update", description="Manually update statistics channels"
    )
    async def update(self, interaction: discord.Interaction):
        try:
            await interaction.response.defer(ephemeral=True)
        except discord.NotFound:
            logging.warning("Interaction expired before /update could be deferred.")
            return

        audit_log(
            f"{interaction.user.name} (ID: {interaction.user.id}) invoked /update."
        )
        # Failures are logged by the reconciler; the reply is the same either way
        await self.reconciler.reconcile(interaction.guild)

        try:
            await interaction.edit_original_response(content="Statistics updated.")
        except discord.NotFound:
            logging.warning("Interaction expired before /update could reply.")

    # ---------------------------
    # Event listeners
    # ---------------------------

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member):
        self._schedule_update(member.guild)

    @commands.Cog.listener()
    async def on_member_remove(self, member: discord.Member):
        self._schedule_update(member.guild)

    def _schedule_update(self, guild: discord.Guild):
        if self.guild_id is None or guild.id != self.guild_id:
            return
        task = asyncio.create_task(
            self._delayed_update(guild), name=f"serverstats_update_{guild.id}"
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _delayed_update(self, guild: discord.Guild):
        await asyncio.sleep(self.member_event_delay)
        await self.reconciler.reconcile(guild)

    # ---------------------------
    # Background task
    # ---------------------------

    @tasks.loop(minutes=60.0)
    async def periodic_refresh(self):
        """Periodic safety refresh for the configured guild."""
        await self.reconciler.reconcile(self.bot.get_guild(self.guild_id))

    @periodic_refresh.before_loop
    async def before_periodic_refresh(self):
        await self.bot.wait_until_ready()

    # ---------------------------
    # Internal helpers
    # ---------------------------

    def _load_config(self) -> Dict[str, Any]:
        """Load YAML config. Never writes or creates the file."""
        try:
            with open(self.CONFIG_PATH, "r", encoding="utf-8") as f:
                cfg = yaml.safe_load(f) or {}
                if not isinstance(cfg, dict):
                    logging.warning(
                        "Config did not parse to a dict. Using empty defaults."
                    )
                    return {}
                return cfg
        except FileNotFoundError:
            logging.error("config.yaml not found. Proceeding with defaults in memory.")
            audit_log("config.yaml not found. Proceeding with defaults in memory.")
            return {}
        except Exception as e:
            logging.error(f"Error loading config.yaml: {e}", exc_info=True)
            audit_log(f"Error loading config.yaml: {e}")
            return {}

    # ---------------------------
    # Cog teardown
    # ---------------------------

    def cog_unload(self):
        if self.periodic_refresh.is_running():
            self.periodic_refresh.cancel()
        for task in list(self._pending):
            task.cancel()


async def setup(bot: commands.Bot):
    await bot.add_cog(ServerStats(bot))
