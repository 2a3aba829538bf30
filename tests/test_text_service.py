"""Text lookup tests."""

from storybot.bot.services.text_service import DEFAULT_TEXTS, TextResolver, render_template
from storybot.web.crud import ConfigOperations
from storybot.web.models import ConfigText


class TestRenderTemplate:
    def test_substitutes_known_placeholders(self):
        assert render_template("Hi [name], turn [n]", {"name": "Ada", "n": 3}) == "Hi Ada, turn 3"

    def test_unknown_placeholders_are_left_alone(self):
        assert render_template("[a] and [b]", {"a": 1}) == "1 and [b]"

    def test_placeholder_names_may_contain_spaces(self):
        assert render_template("[Field label text] must be a number.", {"Field label text": "Turn length"}) == (
            "Turn length must be a number."
        )


class TestTextResolver:
    async def test_unknown_key_resolves_to_itself(self, texts):
        assert await texts.resolve("txtDoesNotExist", "1") == "txtDoesNotExist"

    async def test_builtin_default_without_database(self, texts):
        assert await texts.resolve("txtNotYourTurn") == DEFAULT_TEXTS["txtNotYourTurn"]

    async def test_guild_override_wins_over_system_text(self, session_factory):
        ops = ConfigOperations()
        async with session_factory() as session:
            session.add(ConfigText(config_key="txtNotYourTurn", config_value="Wait please.", language_code="en"))
            await ops.set_guild_value(session, "42", "txtNotYourTurn", "Not yet, friend.", "en")
            await session.commit()

        resolver = TextResolver(session_factory, cache_ttl=0)
        assert await resolver.resolve("txtNotYourTurn", "42") == "Not yet, friend."
        assert await resolver.resolve("txtNotYourTurn", "7") == "Wait please."
        assert await resolver.resolve("txtNotYourTurn") == "Wait please."

    async def test_system_text_in_other_language_is_ignored(self, session_factory):
        async with session_factory() as session:
            session.add(ConfigText(config_key="txtStoryFull", config_value="Histoire complète.", language_code="fr"))
            await session.commit()

        resolver = TextResolver(session_factory, default_language="en", cache_ttl=0)
        assert await resolver.resolve("txtStoryFull", "1") == DEFAULT_TEXTS["txtStoryFull"]

    async def test_seed_defaults_only_once(self, session_factory):
        ops = ConfigOperations()
        async with session_factory() as session:
            inserted = await ops.seed_defaults(session, DEFAULT_TEXTS, "en")
            await session.commit()
        async with session_factory() as session:
            again = await ops.seed_defaults(session, DEFAULT_TEXTS, "en")

        assert inserted == len(DEFAULT_TEXTS)
        assert again == 0

    async def test_cache_is_invalidated_per_guild(self, session_factory):
        ops = ConfigOperations()
        resolver = TextResolver(session_factory, cache_ttl=300)
        assert await resolver.resolve("txtStoryClosed", "42") == DEFAULT_TEXTS["txtStoryClosed"]

        async with session_factory() as session:
            await ops.set_guild_value(session, "42", "txtStoryClosed", "All done here.", "en")
            await session.commit()

        # Still cached
        assert await resolver.resolve("txtStoryClosed", "42") == DEFAULT_TEXTS["txtStoryClosed"]
        resolver.invalidate("42")
        assert await resolver.resolve("txtStoryClosed", "42") == "All done here."

    async def test_render_fills_placeholders(self, texts):
        text = await texts.render("txtTurnSkipped", None, writer_name="Quill")
        assert text == "**Quill**'s turn was skipped."
