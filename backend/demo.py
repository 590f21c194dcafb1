"""Create demo content for development/testing."""

import shutil

from backend import engine
from novel_engine import authoring
from novel_engine.models import (
    Character,
    CharacterEntryScene,
    Choice,
    ChoiceScene,
    DialogueScene,
    EndingConditions,
    ItemUnlock,
    NarrationScene,
    Scenario,
    StageParameters,
    TransitionScene,
)

DEMO_USER = "demo-user"
DEMO_BALANCE = 50

JUN = Character(
    id="jun",
    name="Jun",
    description="A quiet indie musician who writes songs in a rooftop studio above a record shop.",
    stage_parameters={
        "stranger": StageParameters(
            tone="polite, guarded",
            speech_style="short sentences, formal",
            example_lines=["Oh. Hi. Were you looking for the record shop?"],
            fallback_lines=["...Sorry, I was miles away. What did you say?"],
            fallback_emotion="neutral",
        ),
        "acquaintance": StageParameters(
            tone="friendly, a little shy",
            speech_style="casual, trails off when embarrassed",
            example_lines=["You came back. I, uh, hoped you would."],
            fallback_lines=["Hm. Let me think about that one."],
            fallback_emotion="shy",
        ),
        "close": StageParameters(
            tone="warm, teasing",
            speech_style="relaxed, uses your name often",
            example_lines=["You always show up right when I get stuck on a verse."],
            fallback_lines=["Give me a second, I want to say this right."],
            fallback_emotion="smile",
        ),
        "intimate": StageParameters(
            tone="tender, open",
            speech_style="soft, unhurried",
            fallback_lines=["I'm still here. Just listening to you."],
            fallback_emotion="gentle",
        ),
        "lover": StageParameters(
            tone="devoted, playful",
            speech_style="affectionate nicknames",
            fallback_lines=["Stay a little longer? The song isn't finished without you."],
            fallback_emotion="affectionate",
        ),
    },
)

FIRST_MEETING = Scenario(
    id="jun-first-meeting",
    character_id="jun",
    title="Rooftop Demo",
    description="You follow a melody up the fire escape and meet the person playing it.",
    sort_order=0,
    active=True,
    scenes=[
        NarrationScene(
            id="stairs",
            text="A half-finished melody drifts down the fire escape. You climb toward it.",
        ),
        CharacterEntryScene(
            id="meet", speaker="jun", expression="surprised",
            text="Oh! I didn't think anyone could hear that. It's not done yet.",
        ),
        ChoiceScene(
            id="first-choice", speaker="jun", expression="shy",
            prompt="Jun waits, fingers still resting on the guitar strings.",
            choices=[
                Choice(id="praise", text="It's beautiful. Please keep playing.",
                       next_scene="good-end", relationship_delta=10, flag="praised_song",
                       tone="warm"),
                Choice(id="tease", text="Not done? Sounded like a hit to me.",
                       next_scene="neutral-end", relationship_delta=5, tone="playful"),
                Choice(id="bring-coffee", text="(Hand over a coffee from the shop downstairs)",
                       next_scene="good-end", relationship_delta=15, premium=True,
                       flag="brought_coffee", tone="kind"),
            ],
        ),
        DialogueScene(
            id="good-end", speaker="jun", expression="smile", ending=True,
            text="...Thanks. Come back tomorrow? I might finish it if someone's listening.",
        ),
        DialogueScene(
            id="neutral-end", speaker="jun", expression="laugh",
            text="A hit, huh? Then you'll have to come hear the final version.",
        ),
    ],
    ending=EndingConditions(
        unlock_free_chat=True,
        set_stage="acquaintance",
        initial_affection_by_choice={"praise": 30, "tease": 25, "bring-coffee": 35},
        memory_type="first_meeting",
        unlocks=[ItemUnlock(item_id="jun-rooftop-cg", item_type="cg", min_affection=40)],
    ),
)

LATE_NIGHT = Scenario(
    id="jun-late-night",
    character_id="jun",
    title="Late Night Session",
    description="Jun calls you at midnight with a new chorus.",
    sort_order=1,
    active=True,
    min_stage="acquaintance",
    min_affection=30,
    prerequisites=["jun-first-meeting"],
    scenes=[
        TransitionScene(id="midnight", text="Your phone buzzes at 00:14. It's Jun."),
        ChoiceScene(
            id="answer", speaker="jun", expression="nervous",
            text="Are you awake? I need someone to hear this before I lose my nerve.",
            choices=[
                Choice(id="listen", text="Play it for me.", next_scene="chorus",
                       relationship_delta=10),
                Choice(id="sleepy", text="It's late... can it wait?", next_scene="goodnight",
                       relationship_delta=-5),
            ],
        ),
        DialogueScene(
            id="chorus", speaker="jun", expression="smile", ending=True,
            text="(A soft chorus plays.) ...You're the first person who's heard that.",
        ),
        DialogueScene(
            id="goodnight", speaker="jun", expression="sad",
            text="Right, sorry. Goodnight.",
        ),
    ],
    ending=EndingConditions(
        unlock_free_chat=True,
        unlocks=[ItemUnlock(item_id="jun-chorus-voice", item_type="voice", min_affection=50)],
    ),
)


def create_demo_data() -> None:
    """Wipe existing content and user state, then create fresh demo data."""
    base = engine.storage().base_path
    for sub in ("characters", "scenarios"):
        if (base / sub).exists():
            shutil.rmtree(base / sub)
    for db_file in base.glob("state.db*"):
        db_file.unlink()
    engine.init_engine(base)

    storage = engine.storage()
    storage.save_character(JUN)
    for scenario in (FIRST_MEETING, LATE_NIGHT):
        authoring.save_scenario(storage, scenario)
    storage.credit(DEMO_USER, DEMO_BALANCE)
