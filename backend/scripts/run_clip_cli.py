#!/usr/bin/env python3
"""
CLI tool to run one clip workflow from a JSON event file.

Usage:
    python scripts/run_clip_cli.py <event.json> [--output <result.json>] [--plan]

Example:
    python scripts/run_clip_cli.py ./events/clip-42.json --output ./clip-42-result.json
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from podclip.api.schemas import ClipWorkflowEvent
from podclip.db.database import init_db, close_db
from podclip.errors import PodclipError, WorkflowFailed
from podclip.pipeline.chunk_mapper import estimate_processing_time, map_segment_to_chunks
from podclip.pipeline.manifest import ManifestLoader
from podclip.pipeline.segment_composer import SegmentComposer, SegmentRequest
from podclip.services.track_selector import TrackSelector
from podclip.storage import create_storage
from podclip.utils.timecode import format_seconds
from podclip.workers.workflow_runner import build_clip_workflow


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger(__name__)


def load_event(path: Path) -> ClipWorkflowEvent:
    if not path.exists():
        raise FileNotFoundError(f"Event file not found: {path}")
    with open(path) as f:
        return ClipWorkflowEvent.model_validate(json.load(f))


async def plan_clip(event: ClipWorkflowEvent):
    """Log the chunk mapping of every segment without extracting anything."""
    storage = create_storage()
    composer = SegmentComposer(storage, ManifestLoader(storage), TrackSelector())
    workflow_input = event.to_workflow_input()

    for index, segment in enumerate(workflow_input.segments):
        request = SegmentRequest(
            tenant_id=workflow_input.tenant_id,
            episode_id=workflow_input.episode_id,
            clip_id=workflow_input.clip_id,
            index=index,
            segment=segment,
            track_name=workflow_input.track_name,
        )
        track_name, manifest_key = await composer.resolve_track(request)
        manifest = await composer.manifest_loader.load(
            workflow_input.tenant_id, workflow_input.episode_id, track_name, key=manifest_key
        )
        mappings = map_segment_to_chunks(segment, manifest.chunks)
        logger.info(
            f"Segment {index} ({segment.describe()}, track '{track_name}'): "
            f"{len(mappings)} chunk(s), ~{estimate_processing_time(segment, len(mappings))}s to process"
        )
        for m in mappings:
            logger.info(
                f"  {m.filename}: {format_seconds(m.start_offset)} -> {format_seconds(m.end_offset)} "
                f"({m.duration:.3f}s)"
            )


async def run_clip(event: ClipWorkflowEvent, output: Path = None):
    """
    Run the workflow for one clip and optionally write the result.

    Args:
        event: Validated workflow event
        output: Optional path for the JSON result
    """
    workflow = build_clip_workflow()
    result = await workflow.run(event.to_workflow_input())

    logger.info(f"Clip written to: {result.clip_key}")
    logger.info(
        f"Duration: {result.duration:.2f}s, Resolution: {result.resolution}, "
        f"Size: {result.file_size} bytes"
    )

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, 'w') as f:
            json.dump(result.to_dict(), f, indent=2)
        logger.info(f"Result written to: {output}")


async def main_async(args):
    await init_db()
    try:
        event = load_event(args.event_path)
        if args.plan:
            await plan_clip(event)
        else:
            await run_clip(event, args.output)
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(
        description="Run a podclip clip workflow from an event file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run the workflow
    python scripts/run_clip_cli.py event.json

    # Show how segments map onto chunks without extracting
    python scripts/run_clip_cli.py event.json --plan

    # Keep the result summary
    python scripts/run_clip_cli.py event.json --output ./result.json
        """
    )

    parser.add_argument(
        "event_path",
        type=Path,
        help="JSON file with tenantId, episodeId, clipId and segments"
    )

    parser.add_argument(
        "--output", "-o",
        type=Path,
        default=None,
        help="Write the workflow result as JSON to this path"
    )

    parser.add_argument(
        "--plan",
        action="store_true",
        help="Only resolve tracks and print chunk mappings"
    )

    args = parser.parse_args()

    try:
        asyncio.run(main_async(args))
    except (FileNotFoundError, ValidationError) as e:
        logger.error(str(e))
        sys.exit(2)
    except WorkflowFailed as e:
        logger.error(f"Workflow failed during {e.stage}: {e.cause}")
        sys.exit(1)
    except PodclipError as e:
        logger.error(f"{e.kind}: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
