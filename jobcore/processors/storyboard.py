"""
Storyboard Pipeline Processors

Two-stage script-to-shot-list pipeline:

    storyboard_generation (parent)
        -> storyboard_basic_extraction (stage 1: split the script into shots)
            -> storyboard_matching (stage 2: match shots to known characters/scenes)

The parent only enqueues stage 1 and completes. Stage 1 enqueues stage 2
after it completes, passing its own job id so stage 2 can read its result.
Stage 2 links itself onto the parent as ``matchingJobId``.

The AI calls are injected:
- ``shot_extractor(episode_id) -> list of shot dicts``
- ``shot_matcher(episode_id, shots) -> dict`` with the matched shots and counts
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from jobcore.db.models import Job, JobStatus
from jobcore.errors import ProcessorFailure
from jobcore.jobs.payloads import (
    JobType,
    StoryboardBasicExtractionInput,
    StoryboardGenerationInput,
    StoryboardMatchingInput,
    parse_input
)
from jobcore.jobs.pipeline import CHILD_IDS_KEY
from jobcore.processors.base import BaseJobProcessor, ProcessorContext

logger = logging.getLogger(__name__)

ShotExtractor = Callable[[str], Awaitable[List[Dict[str, Any]]]]
ShotMatcher = Callable[[str, List[Dict[str, Any]]], Awaitable[Dict[str, Any]]]

BASIC_EXTRACTION_KEY = 'basicExtractionJobId'
MATCHING_KEY = 'matchingJobId'


class StoryboardGenerationProcessor(BaseJobProcessor):
    """Entry point of the pipeline: enqueues basic extraction"""

    job_type = JobType.STORYBOARD_GENERATION.value

    async def process(self, job: Job, context: ProcessorContext) -> Optional[Dict[str, Any]]:
        payload: StoryboardGenerationInput = parse_input(job.type, job.input_data)

        context.update_progress(10, message="Queueing shot extraction")
        child_id = context.create_child_job(
            JobType.STORYBOARD_BASIC_EXTRACTION.value,
            {'episodeId': payload.episode_id}
        )
        return {
            CHILD_IDS_KEY: [child_id],
            BASIC_EXTRACTION_KEY: child_id,
            'message': "Shot extraction queued",
        }


class StoryboardBasicExtractionProcessor(BaseJobProcessor):
    """Stage 1: extract the shot list of an episode"""

    job_type = JobType.STORYBOARD_BASIC_EXTRACTION.value

    def __init__(self, shot_extractor: ShotExtractor, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.shot_extractor = shot_extractor

    async def process(self, job: Job, context: ProcessorContext) -> Optional[Dict[str, Any]]:
        payload: StoryboardBasicExtractionInput = parse_input(job.type, job.input_data)

        context.update_progress(20, message="Extracting shots")
        shots = await self.shot_extractor(payload.episode_id)
        if not shots:
            raise ProcessorFailure(f"No shots extracted for episode {payload.episode_id}")

        context.update_progress(90, message=f"Extracted {len(shots)} shots")
        return {'shots': shots, 'shotCount': len(shots)}

    async def after_complete(self, job: Job, result: Optional[Dict[str, Any]], context: ProcessorContext) -> None:
        payload: StoryboardBasicExtractionInput = parse_input(job.type, job.input_data)
        parent = payload.parent_job_id or job.id
        try:
            matching_id = context.create_child_job(
                JobType.STORYBOARD_MATCHING.value,
                {'episodeId': payload.episode_id, BASIC_EXTRACTION_KEY: job.id},
                parent=parent
            )
            logger.info(f"Job {job.id} queued matching job {matching_id}")
        except Exception as e:
            # Stage 1 stays completed; the user can rerun matching
            logger.error(f"Failed to queue matching for job {job.id}: {str(e)}")


class StoryboardMatchingProcessor(BaseJobProcessor):
    """Stage 2: match extracted shots to characters and scenes"""

    job_type = JobType.STORYBOARD_MATCHING.value

    def __init__(self, shot_matcher: ShotMatcher, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.shot_matcher = shot_matcher

    async def process(self, job: Job, context: ProcessorContext) -> Optional[Dict[str, Any]]:
        payload: StoryboardMatchingInput = parse_input(job.type, job.input_data)

        stage_one = context.get_job(payload.basic_extraction_job_id)
        if stage_one.status != JobStatus.COMPLETED.value or not stage_one.result_data:
            raise ProcessorFailure(
                f"Basic extraction result not available (job {stage_one.id} is {stage_one.status})"
            )
        shots = stage_one.result_data.get('shots') or []
        if not shots:
            raise ProcessorFailure(f"Basic extraction job {stage_one.id} has no shots")

        context.update_progress(30, message=f"Matching {len(shots)} shots")
        matched = await self.shot_matcher(payload.episode_id, shots)
        matched_shots = matched.get('shots', [])

        context.update_progress(90, message="Matching complete")
        return {
            'shots': matched_shots,
            'shotCount': len(matched_shots),
            'matchedSceneCount': matched.get('matchedSceneCount', 0),
            'matchedCharacterCount': matched.get('matchedCharacterCount', 0),
        }

    async def after_complete(self, job: Job, result: Optional[Dict[str, Any]], context: ProcessorContext) -> None:
        parent_id = job.parent_job_id or (job.input_data or {}).get('parentJobId')
        if not parent_id:
            return
        try:
            context.attach_to_parent(parent_id, MATCHING_KEY, job.id)
        except Exception as e:
            logger.error(f"Failed to link matching job {job.id} to parent {parent_id}: {str(e)}")


def storyboard_processors(shot_extractor: ShotExtractor, shot_matcher: ShotMatcher) -> List[BaseJobProcessor]:
    """The three processors of the pipeline, ready to register on a worker"""
    return [
        StoryboardGenerationProcessor(),
        StoryboardBasicExtractionProcessor(shot_extractor),
        StoryboardMatchingProcessor(shot_matcher),
    ]
