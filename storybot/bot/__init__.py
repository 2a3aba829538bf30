"""Discord bot: client setup, plugins and story services."""
