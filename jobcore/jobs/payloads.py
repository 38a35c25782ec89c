"""
Job Payload Models

Typed views over the JSON ``input_data`` / ``result_data`` of the known job
types. Storage stays opaque JSON; processors that want validation call
``parse_input`` on the raw payload. Field names are snake_case in Python and
camelCase on the wire, matching what producers store.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobType(str, Enum):
    """Job types known to the bundled processors and payload models"""
    NOVEL_SPLIT = "novel_split"
    CHARACTER_EXTRACTION = "character_extraction"
    SCENE_EXTRACTION = "scene_extraction"
    CHARACTER_IMAGE_GENERATION = "character_image_generation"
    SCENE_IMAGE_GENERATION = "scene_image_generation"
    STORYBOARD_GENERATION = "storyboard_generation"
    STORYBOARD_BASIC_EXTRACTION = "storyboard_basic_extraction"
    STORYBOARD_MATCHING = "storyboard_matching"
    BATCH_IMAGE_GENERATION = "batch_image_generation"
    VIDEO_GENERATION = "video_generation"
    SHOT_VIDEO_GENERATION = "shot_video_generation"
    BATCH_VIDEO_GENERATION = "batch_video_generation"
    SHOT_TTS_GENERATION = "shot_tts_generation"
    FINAL_VIDEO_EXPORT = "final_video_export"


class Payload(BaseModel):
    """Base for payload models: camelCase aliases, unknown keys kept"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='allow')

    def to_data(self) -> Dict[str, Any]:
        """Dump back to the stored (camelCase) form"""
        return self.model_dump(by_alias=True, exclude_none=True)


class NovelSplitInput(Payload):
    content: str = Field(..., min_length=1)
    max_episodes: Optional[int] = Field(None, ge=1)


class CharacterExtractionInput(Payload):
    episode_ids: List[str] = Field(..., min_length=1)


class SceneExtractionInput(Payload):
    episode_ids: List[str] = Field(..., min_length=1)


class CharacterImageGenerationInput(Payload):
    character_id: str
    image_id: str
    regenerate: bool = False


class SceneImageGenerationInput(Payload):
    scene_id: str
    image_id: str
    regenerate: bool = False


class StoryboardGenerationInput(Payload):
    episode_id: str
    auto_generate_images: bool = False


class StoryboardBasicExtractionInput(Payload):
    episode_id: str
    parent_job_id: Optional[str] = None


class StoryboardMatchingInput(Payload):
    episode_id: str
    basic_extraction_job_id: str
    parent_job_id: Optional[str] = None


class PromptItem(Payload):
    id: str
    prompt: str


class BatchImageGenerationInput(Payload):
    prompts: List[PromptItem] = Field(..., min_length=1)
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None


class VideoGenerationInput(Payload):
    shot_id: str
    image_url: Optional[str] = None


class ShotVideoGenerationInput(Payload):
    shot_id: str
    image_url: str
    prompt: str
    duration: str = Field("5", pattern=r'^(5|10)$')
    regenerate: bool = False


class BatchVideoGenerationInput(Payload):
    shot_ids: List[str] = Field(..., min_length=1)
    concurrency: int = Field(3, ge=1)


class DialogueLine(Payload):
    dialogue_id: str
    text: str
    character_name: Optional[str] = None
    emotion_tag: Optional[str] = None


class ShotTTSGenerationInput(Payload):
    shot_id: str
    dialogues: List[DialogueLine]


class Transition(Payload):
    from_shot_id: Optional[str] = None
    to_shot_id: str
    type: str
    duration: float


class FinalVideoExportInput(Payload):
    episode_id: str
    include_audio: bool = True
    include_subtitles: bool = False
    export_quality: str = Field("draft", pattern=r'^(draft|high)$')
    transitions: Optional[List[Transition]] = None


class ShotCharacter(Payload):
    name: str
    character_id: Optional[str] = None
    character_image_id: Optional[str] = None
    position: Optional[str] = None
    action: Optional[str] = None
    match_confidence: Optional[float] = None


class ShotDialogue(Payload):
    dialogue_text: str
    order: int
    character_name: Optional[str] = None
    character_id: Optional[str] = None
    emotion_tag: Optional[str] = None
    match_confidence: Optional[float] = None


class Shot(Payload):
    order: int
    shot_size: str
    camera_movement: str
    duration: float
    visual_description: str
    visual_prompt: str
    audio_prompt: Optional[str] = None
    scene_name: Optional[str] = None
    scene_id: Optional[str] = None
    scene_match_confidence: Optional[float] = None
    characters: List[ShotCharacter] = Field(default_factory=list)
    dialogues: List[ShotDialogue] = Field(default_factory=list)


class StoryboardBasicExtractionResult(Payload):
    shots: List[Shot]
    shot_count: int


class StoryboardMatchingResult(Payload):
    shots: List[Shot]
    shot_count: int
    matched_scene_count: int = 0
    matched_character_count: int = 0


INPUT_MODELS: Dict[JobType, Type[Payload]] = {
    JobType.NOVEL_SPLIT: NovelSplitInput,
    JobType.CHARACTER_EXTRACTION: CharacterExtractionInput,
    JobType.SCENE_EXTRACTION: SceneExtractionInput,
    JobType.CHARACTER_IMAGE_GENERATION: CharacterImageGenerationInput,
    JobType.SCENE_IMAGE_GENERATION: SceneImageGenerationInput,
    JobType.STORYBOARD_GENERATION: StoryboardGenerationInput,
    JobType.STORYBOARD_BASIC_EXTRACTION: StoryboardBasicExtractionInput,
    JobType.STORYBOARD_MATCHING: StoryboardMatchingInput,
    JobType.BATCH_IMAGE_GENERATION: BatchImageGenerationInput,
    JobType.VIDEO_GENERATION: VideoGenerationInput,
    JobType.SHOT_VIDEO_GENERATION: ShotVideoGenerationInput,
    JobType.BATCH_VIDEO_GENERATION: BatchVideoGenerationInput,
    JobType.SHOT_TTS_GENERATION: ShotTTSGenerationInput,
    JobType.FINAL_VIDEO_EXPORT: FinalVideoExportInput,
}


def parse_input(job_type: str, data: Optional[Dict[str, Any]]) -> Payload:
    """
    Validate a stored input payload against its job type's model.

    Args:
        job_type: Job type tag
        data: Raw ``input_data``

    Returns:
        The payload model instance

    Raises:
        ValueError: Unknown job type
        pydantic.ValidationError: The payload does not match the model
    """
    try:
        model = INPUT_MODELS[JobType(job_type)]
    except ValueError:
        raise ValueError(f"No payload model for job type: {job_type}")
    return model.model_validate(data or {})
