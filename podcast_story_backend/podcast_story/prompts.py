SYSTEM_PROMPT = """You are a skilled podcast scriptwriter. Write the requested podcast script, then convert the dialogue into scenes. Each scene is a cohesive segment with its own visual setting and one or more dialogue inputs from the same or different speakers.
Track every named entity (characters, named objects, specific locations) across the script. Give each a unique identifier and count its appearances across scenes.
Output ONLY valid JSON matching the provided schema."""

AUDIO_ONLY_SYSTEM_PROMPT = """You are a skilled podcast scriptwriter. Write an engaging {duration}-minute {style} style podcast script with a {tone} tone about: {story}.
Focus purely on audio: compelling dialogue, narrative flow and pacing. No visual elements.
Output ONLY valid JSON matching the provided schema."""

USER_PROMPT_TEMPLATE = """Create a {duration}-minute {style} style podcast script with a {tone} tone about: {story}.

Structure:
- An INTRO scene that welcomes the audience and sets up the theme.
- Middle scenes that mix narrative storytelling with explanatory context.
- An OUTRO scene that summarizes key insights and leaves a closing thought.

Each scene has:
- A unique ID (scene_1, scene_2, ...)
- An image_prompt for the whole scene in {image_style} style, cinematic composition
- characters: named entities in the scene as {{name, uuid: "char_<8 alphanumerics>"}}
- setting: the named location if any, as {{name, uuid: "setting_<8 alphanumerics>"}}
- inputs: dialogue segments {{text, voice_id}}

Reuse the SAME uuid whenever an entity reappears. Generic descriptions ("a person", "the street") get no uuid.

{speaker_info}

Time the scenes at about 160 words per minute. No sound effects, music cues or stage directions.

In metadata include imageStyle "{image_style}", this exact musicPrompt: "{music_prompt}", an anchors object with characters and settings arrays (uuid, name, description, appearances), and a themes array.
Character descriptions use archetypal, period-appropriate roles rather than real individuals."""

AUDIO_ONLY_USER_PROMPT_TEMPLATE = """Create a {duration}-minute {style} style podcast script with a {tone} tone about: {story}.

Include an INTRO scene, several middle scenes and an OUTRO scene. Each scene has a unique ID (scene_1, scene_2, ...), timing information and an inputs array of dialogue segments {{text, voice_id}}.

{speaker_info}

Time the scenes at about 160 words per minute.
Include this exact music prompt in metadata: "{music_prompt}"."""

SHOT_INSTRUCTIONS = """Scene total duration: {scene_duration} seconds.
Shot durations (in order): [{durations}]

Create {shots_needed} cinematic shots for this scene from the dialogue and context below.
- Keep every shot faithful to the setting and era; no anachronistic clothing, props or architecture.
- Each shot visualizes or supports a specific dialogue beat; reference it as (line X).
- Each shot's duration must match the provided array, in order.
- Begin each prompt with [Setting: <name> | Era: <value>].
Return JSON with a "shots" array of objects {{shot, duration, prompt}}."""

ANCHOR_PROMPT_TEMPLATE = """Reference sheet of {name}: {description}. {image_style} style, neutral background, full figure, even lighting, consistent design for reuse across scenes."""

# Fallback camera variations when shot prompts cannot be generated
SHOT_VARIATIONS = [
    "wide establishing shot",
    "medium shot with dramatic lighting",
    "close-up detail shot",
    "low angle perspective",
    "high angle overview",
    "side profile composition",
    "shallow depth of field focus",
    "atmospheric wide shot",
    "tight framing on key elements",
]

STYLE_DESCRIPTORS = {
    "documentary": "cinematic, atmospheric",
    "interview": "subtle, professional",
    "narrative": "storytelling, engaging",
    "educational": "calm, focused",
}

TONE_DESCRIPTORS = {
    "mysterious": "ambient, suspenseful, dark undertones",
    "informative": "clean, unobtrusive, professional",
    "dramatic": "intense, building tension",
    "conversational": "warm, friendly, light",
}

AMBIENT_DESCRIPTORS = [
    "soft ambient",
    "gentle background",
    "subtle atmospheric",
    "quiet cinematic",
    "mellow instrumental",
    "peaceful ambient",
]

AMBIENT_SUFFIX = (
    "low volume, no drums, no loud instruments, no vocals, minimal percussion, "
    "background listening, contemplative, slow tempo, subtle textures, "
    "gentle synthesizers, soft strings, ambient pads, peaceful atmosphere"
)

ENERGETIC_REPLACEMENTS = {
    "upbeat": "calm",
    "energetic": "peaceful",
    "fast": "slow",
    "loud": "soft",
    "aggressive": "gentle",
    "intense": "subtle",
    "powerful": "delicate",
    "exciting": "soothing",
    "dynamic": "flowing",
}

ENERGETIC_TERMS = [
    "electronic dance", "heavy drums", "driving beat", "hip-hop", "uplifting",
    "dance", "rock", "pop", "rap", "edm", "techno", "house", "disco", "funk",
]


def _entity_schema():
    return {
        "type": "object",
        "properties": {"name": {"type": "string"}, "uuid": {"type": "string"}},
        "required": ["name", "uuid"],
        "additionalProperties": False,
    }


def _anchor_list_schema():
    return {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {
                "uuid": {"type": "string"},
                "name": {"type": "string"},
                "description": {"type": "string"},
                "appearances": {"type": "number"},
            },
            "required": ["uuid", "name", "description", "appearances"],
            "additionalProperties": False,
        },
    }


def _inputs_schema():
    return {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {"text": {"type": "string"}, "voice_id": {"type": "string"}},
            "required": ["text", "voice_id"],
            "additionalProperties": False,
        },
    }


def script_schema(video: bool) -> dict:
    scene_props = {
        "id": {"type": "string"},
        "startTime": {"type": "number"},
        "duration": {"type": "number"},
        "wordCount": {"type": "number"},
        "inputs": _inputs_schema(),
    }
    meta_props = {
        "totalScenes": {"type": "number"},
        "averageSceneDuration": {"type": "number"},
        "totalWords": {"type": "number"},
        "estimationMethod": {"type": "string"},
        "speechStyle": {"type": "string"},
        "musicPrompt": {"type": "string"},
        "themes": {"type": "array", "items": {"type": "string"}},
    }
    if video:
        scene_props["image_prompt"] = {"type": "string"}
        scene_props["characters"] = {"type": "array", "items": _entity_schema()}
        scene_props["setting"] = _entity_schema()
        meta_props["imageStyle"] = {"type": "string"}
        meta_props["anchors"] = {
            "type": "object",
            "properties": {"characters": _anchor_list_schema(), "settings": _anchor_list_schema()},
            "required": ["characters", "settings"],
            "additionalProperties": False,
        }
    return {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "totalDuration": {"type": "number"},
            "estimatedWordsPerMinute": {"type": "number"},
            "scenes": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": scene_props,
                    "required": list(scene_props),
                    "additionalProperties": False,
                },
            },
            "metadata": {
                "type": "object",
                "properties": meta_props,
                "required": list(meta_props),
                "additionalProperties": False,
            },
        },
        "required": ["title", "totalDuration", "estimatedWordsPerMinute", "scenes", "metadata"],
        "additionalProperties": False,
    }


def shot_schema(shots_needed: int) -> dict:
    return {
        "type": "object",
        "properties": {
            "shots": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "shot": {"type": "number"},
                        "duration": {"type": "number"},
                        "prompt": {"type": "string"},
                    },
                    "required": ["shot", "duration", "prompt"],
                    "additionalProperties": False,
                },
                "minItems": shots_needed,
                "maxItems": shots_needed,
            }
        },
        "required": ["shots"],
        "additionalProperties": False,
    }
