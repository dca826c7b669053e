import random

import discord
from discord import app_commands
from discord.ext import commands

from musicbox.config import config
from musicbox.utils import style_url

KAOMOJIS = ("(ﾉ◕ヮ◕)ﾉ*:･ﾟ✧", "(｡•̀ᴗ-)✧", "ヾ(＾∇＾)", "(¬‿¬)", "┬─┬ノ( º _ ºノ)")


class AdminCog(commands.Cog):
    """Bot links and owner-only management."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @app_commands.command(name="invite", description="Invite me to your server!")
    async def invite(self, interaction: discord.Interaction):
        if not config.INVITE_URL:
            await interaction.response.send_message("Invites are not enabled for this bot.", ephemeral=True)
            return
        await interaction.response.send_message(style_url("Invite me!", config.INVITE_URL, True))

    @app_commands.command(name="site", description="The player's website. :)")
    async def site(self, interaction: discord.Interaction):
        await interaction.response.send_message(style_url("Website", config.PUBLIC_URL, True))

    @app_commands.command(name="restart", description="Restart the bot.")
    async def restart(self, interaction: discord.Interaction):
        """Shut the bot down so the process supervisor starts it again."""
        if interaction.user.id not in config.OWNER_IDS:
            await interaction.response.send_message("Not today fella.")
            return
        await interaction.response.send_message(f"{random.choice(KAOMOJIS)} Restarting bot")
        await self.bot.close()


async def setup(bot: commands.Bot):
    await bot.add_cog(AdminCog(bot))
