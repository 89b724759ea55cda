import os, re, json, logging
from typing import List, Optional

from pydantic import ValidationError

from . import settings
from .models import PodcastScript, Scene, ShotPlan, Story
from .prompts import (
    AUDIO_ONLY_SYSTEM_PROMPT,
    AUDIO_ONLY_USER_PROMPT_TEMPLATE,
    SHOT_INSTRUCTIONS,
    SHOT_VARIATIONS,
    STYLE_DESCRIPTORS,
    SYSTEM_PROMPT,
    TONE_DESCRIPTORS,
    USER_PROMPT_TEMPLATE,
    script_schema,
    shot_schema,
)

logger = logging.getLogger(__name__)

_client = None


def _get_client():
    global _client
    if _client is None:
        from openai import AsyncOpenAI
        api_key = os.getenv("OPENAI_API_KEY", "")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is not set; please configure your .env")
        _client = AsyncOpenAI(api_key=api_key)
    return _client


class ScriptParseError(ValueError):
    pass


def build_music_prompt(style: str, tone: str) -> str:
    style_desc = STYLE_DESCRIPTORS.get(style, "ambient")
    tone_desc = TONE_DESCRIPTORS.get(tone, "neutral")
    return f"{tone} {style} background instrumental for podcast, {style_desc}, {tone_desc}"


def _speaker_info(story: Story) -> str:
    voices = story.voices
    if story.speakers == "dual" and len(voices) >= 2:
        return (f"Use both voices naturally: '{voices[0]}' and '{voices[1]}'. Speakers can have multiple "
                f"consecutive lines, and scenes don't need to include both voices.")
    return f"Use only voice: '{voices[0]}' for all dialogue."


def build_script_messages(story: Story) -> List[dict]:
    params = dict(
        duration=story.duration,
        style=story.style,
        tone=story.tone,
        story=story.prompt,
        image_style=story.image_style,
        speaker_info=_speaker_info(story),
        music_prompt=build_music_prompt(story.style, story.tone),
    )
    if story.video:
        system, user = SYSTEM_PROMPT, USER_PROMPT_TEMPLATE.format(**params)
    else:
        system, user = AUDIO_ONLY_SYSTEM_PROMPT.format(**params), AUDIO_ONLY_USER_PROMPT_TEMPLATE.format(**params)
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


async def submit_script(story: Story) -> str:
    """Start a background script generation; completion arrives by webhook."""
    logger.info(f"Calling OpenAI API for {'video' if story.video else 'audio-only'} script generation...")
    client = _get_client()
    response = await client.responses.create(
        model=settings.OPENAI_SCRIPT_MODEL,
        input=build_script_messages(story),
        text={
            "format": {
                "type": "json_schema",
                "name": "podcast_script",
                "schema": script_schema(story.video),
                "strict": True,
            }
        },
        background=True,
    )
    logger.info(f"Script generation submitted for story {story.id}: {response.id}")
    return response.id


async def fetch_response(response_id: str):
    client = _get_client()
    return await client.responses.retrieve(response_id)


def parse_script(text: Optional[str]) -> PodcastScript:
    if not text:
        raise ScriptParseError("No text content found in response")
    try:
        script = PodcastScript.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError) as e:
        raise ScriptParseError(f"Script is not valid: {e}") from e
    if not script.scenes:
        raise ScriptParseError("Script has no scenes")
    return script


def _temporal_anchor(scene: Scene) -> Optional[str]:
    dialogue = " \n ".join(i.text for i in scene.inputs)
    dated = re.search(r"\b([A-Z][a-z]+\s+\d{1,2},\s*\d{1,4}\s*(BCE|BC|CE|AD))\b", dialogue, re.IGNORECASE)
    if dated:
        return dated.group(1)
    bare = re.search(r"\b(\d{1,4})\s*(BCE|BC|CE|AD)\b", dialogue, re.IGNORECASE)
    return bare.group(0) if bare else None


def fallback_shot_prompts(scene: Scene, durations: List[float]) -> List[ShotPlan]:
    return [
        ShotPlan(shot=i + 1, duration=d, prompt=f"{scene.image_prompt}, {SHOT_VARIATIONS[i % len(SHOT_VARIATIONS)]}")
        for i, d in enumerate(durations)
    ]


async def generate_shot_prompts(scene: Scene, durations: List[float], image_style: str) -> List[ShotPlan]:
    """Dialogue-aware shot prompts; falls back to camera variations on any failure."""
    shots_needed = len(durations)
    try:
        setting = scene.setting.name if scene.setting else "Unknown"
        characters = ", ".join(c.name for c in scene.characters) or "-"
        context = f"Setting: {setting}\nCharacters in scene: {characters}\nEra/Date: {_temporal_anchor(scene) or '-'}"
        dialogue = "\n".join(f'{n}. "{i.text}"' for n, i in enumerate(scene.inputs, start=1))

        client = _get_client()
        response = await client.responses.create(
            model=settings.OPENAI_SHOT_MODEL,
            instructions=SHOT_INSTRUCTIONS.format(
                scene_duration=round(sum(durations), 2),
                durations=", ".join(str(d) for d in durations),
                shots_needed=shots_needed,
            ),
            input=f"Scene Style: {scene.image_prompt} ({image_style} style)\n\nContext:\n{context}\n\nDialogue (numbered):\n{dialogue}",
            text={"format": {"type": "json_schema", "name": "shot_prompts", "schema": shot_schema(shots_needed), "strict": True}},
        )
        shots = json.loads(response.output_text)["shots"]
        if len(shots) < shots_needed:
            raise ValueError(f"expected {shots_needed} shots, got {len(shots)}")
        # Durations come from the measured audio, not from the model.
        plans = [ShotPlan(shot=i + 1, duration=d, prompt=s["prompt"]) for i, (s, d) in enumerate(zip(shots, durations))]
        logger.info(f"Generated {len(plans)} dialogue-aware shot prompts for scene {scene.id}")
        return plans
    except Exception as e:
        logger.error(f"Error generating shot prompts for scene {scene.id}: {e}; using fallback prompts")
        return fallback_shot_prompts(scene, durations)
