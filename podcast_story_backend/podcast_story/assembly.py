"""
Final assembly, run once per story after it crosses the ready threshold.

collect -> download -> render_video | render_audio -> upload -> finalize -> publish
"""
import os, shutil, asyncio, logging, traceback
from typing import Awaitable, Callable, List, Optional

import httpx
from langgraph.graph import StateGraph, END

from . import blob_store, cloudflare_client, media, settings
from .events import StoryEventHub
from .models import (
    AssemblyState,
    AudioStatus,
    ImageStatus,
    JobKind,
    MusicStatus,
    ResponseKind,
    ResponseRecord,
    ShotAsset,
    StoryStatus,
)
from .registry import JobRegistry

logger = logging.getLogger(__name__)

Uploader = Callable[[bytes, str, str], Awaitable[str]]
StreamCopier = Callable[[str, str], Awaitable[str]]


class AssemblyError(RuntimeError):
    pass


def timeline_shots(images) -> List[ShotAsset]:
    """
    Completed shots in scene then shot order. A failed shot's time goes to
    the preceding completed shot (or the next one at the start) so the
    slideshow stays in step with the narration.
    """
    ordered = sorted(images, key=lambda j: (j.scene_number, j.shot_number))
    shots: List[ShotAsset] = []
    carry = 0.0
    for job in ordered:
        if job.status == ImageStatus.COMPLETED and job.media_url:
            shots.append(ShotAsset(url=job.media_url, duration=job.duration + carry))
            carry = 0.0
        elif shots:
            shots[-1].duration += job.duration
        else:
            carry += job.duration
    return shots


class AssemblyService:
    def __init__(self, registry: JobRegistry, events: Optional[StoryEventHub] = None,
                 upload: Uploader = blob_store.upload,
                 copy_to_stream: Optional[StreamCopier] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.registry = registry
        self.events = events
        self.upload = upload
        if copy_to_stream is None and cloudflare_client.is_configured():
            copy_to_stream = cloudflare_client.copy_to_stream
        self.copy_to_stream = copy_to_stream
        self.transport = transport
        self.graph = self.build_graph()

    def build_graph(self):
        g = StateGraph(AssemblyState)
        g.add_node("collect", self.node_collect)
        g.add_node("download", self.node_download)
        g.add_node("render_video", self.node_render_video)
        g.add_node("render_audio", self.node_render_audio)
        g.add_node("upload", self.node_upload)
        g.add_node("finalize", self.node_finalize)
        g.add_node("publish", self.node_publish)
        g.set_entry_point("collect")
        g.add_edge("collect", "download")
        g.add_conditional_edges(
            "download",
            lambda state: "render_video" if state.video else "render_audio",
            {"render_video": "render_video", "render_audio": "render_audio"},
        )
        g.add_edge("render_video", "upload")
        g.add_edge("render_audio", "upload")
        g.add_edge("upload", "finalize")
        g.add_edge("finalize", "publish")
        g.add_edge("publish", END)
        return g.compile()

    async def assemble_story(self, story_id: str) -> bool:
        """Run the graph for ``story_id``; any node failure moves the story to ``video_failed``."""
        tmp_dir = os.path.join(settings.TEMP_ROOT, story_id, "assembly")
        os.makedirs(tmp_dir, exist_ok=True)
        state = AssemblyState(story_id=story_id, tmp_dir=tmp_dir)
        try:
            logger.info(f"Starting assembly for story {story_id} in {tmp_dir}")
            await self.graph.ainvoke(state)
            logger.info(f"Assembly completed for story {story_id}")
            return True
        except Exception as e:
            logger.error(f"Assembly failed for story {story_id}: {e}")
            logger.error(f"Full traceback: {traceback.format_exc()}")
            if await self.registry.update_story_status(story_id, StoryStatus.VIDEO_FAILED):
                await self._publish(story_id, "story.video_failed", status=StoryStatus.VIDEO_FAILED.value, error=str(e))
            return False
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    # --- nodes ---

    async def node_collect(self, state: AssemblyState) -> dict:
        story = await self.registry.get_story(state.story_id)
        if not story:
            raise AssemblyError(f"Story {state.story_id} not found")
        if not story.audio_url:
            raise AssemblyError(f"Story {state.story_id} has no narration")

        segments = await self.registry.list_jobs(state.story_id, JobKind.AUDIO)
        if not segments or any(s.status != AudioStatus.COMPLETED for s in segments):
            raise AssemblyError(f"Story {state.story_id} has incomplete audio segments")

        tracks = await self.registry.list_jobs(state.story_id, JobKind.MUSIC)
        music = next((t for t in tracks if t.status == MusicStatus.COMPLETED and t.media_url), None)

        shots = []
        if story.video:
            shots = timeline_shots(await self.registry.list_jobs(state.story_id, JobKind.IMAGE))
            if not shots:
                raise AssemblyError(f"Story {state.story_id} has no completed images")

        logger.info(
            f"Collected assets for story {state.story_id}: {len(segments)} segments, "
            f"{len(shots)} shots, music={'yes' if music else 'no'}"
        )
        return {
            "video": story.video,
            "narration_url": story.audio_url,
            "music_url": music.media_url if music else None,
            "shots": shots,
        }

    async def _fetch(self, client: httpx.AsyncClient, url: str, path: str) -> str:
        r = await client.get(url)
        r.raise_for_status()
        media.write_bytes(path, r.content)
        return path

    async def node_download(self, state: AssemblyState) -> dict:
        async with httpx.AsyncClient(timeout=120, transport=self.transport, follow_redirects=True) as client:
            narration_path = await self._fetch(client, state.narration_url, os.path.join(state.tmp_dir, "narration.mp3"))
            music_path = None
            if state.music_url:
                music_path = await self._fetch(client, state.music_url, os.path.join(state.tmp_dir, "music.mp3"))
            shots = []
            for i, shot in enumerate(state.shots):
                path = await self._fetch(client, shot.url, os.path.join(state.tmp_dir, "images", f"shot_{i:04d}.jpg"))
                shots.append(shot.model_copy(update={"path": path}))
        duration = await asyncio.to_thread(media.probe_duration, narration_path)
        logger.info(f"Downloaded assets for story {state.story_id}; narration is {duration:.1f}s")
        return {"narration_path": narration_path, "music_path": music_path, "shots": shots, "duration": duration}

    async def node_render_video(self, state: AssemblyState) -> dict:
        out_path = os.path.join(state.tmp_dir, "final.mp4")
        await asyncio.to_thread(
            media.render_video,
            [(s.path, s.duration) for s in state.shots],
            state.narration_path,
            state.music_path,
            out_path,
            state.duration,
        )
        logger.info(f"Rendered video for story {state.story_id}: {os.path.exists(out_path)}")
        return {"final_path": out_path}

    async def node_render_audio(self, state: AssemblyState) -> dict:
        out_path = os.path.join(state.tmp_dir, "final.mp3")
        await asyncio.to_thread(media.mix_audio, state.narration_path, state.music_path, out_path, state.duration)
        logger.info(f"Mixed audio for story {state.story_id}: {os.path.exists(out_path)}")
        return {"final_path": out_path}

    async def node_upload(self, state: AssemblyState) -> dict:
        with open(state.final_path, "rb") as f:
            data = f.read()
        if state.video:
            key, content_type = f"stories/{state.story_id}/final.mp4", "video/mp4"
        else:
            key, content_type = f"stories/{state.story_id}/final.mp3", "audio/mpeg"
        return {"media_url": await self.upload(data, key, content_type)}

    async def node_finalize(self, state: AssemblyState) -> dict:
        if not await self.registry.update_story_status(state.story_id, StoryStatus.DO_COMPLETED,
                                                       media_url=state.media_url):
            raise AssemblyError(f"Story {state.story_id} could not move to do_completed")
        await self._publish(state.story_id, "story.do_completed", status=StoryStatus.DO_COMPLETED.value,
                            media_url=state.media_url)
        return {}

    async def node_publish(self, state: AssemblyState) -> dict:
        if state.video and self.copy_to_stream is not None:
            uid = await self.copy_to_stream(state.media_url, state.story_id)
            await self.registry.record_response(
                ResponseRecord(response_id=uid, kind=ResponseKind.VIDEO, story_id=state.story_id)
            )
            await self.registry.update_story(state.story_id, cloudflare_id=uid)
            logger.info(f"Story {state.story_id} handed to Cloudflare Stream ({uid})")
            return {}

        if state.video:
            logger.info(f"Cloudflare Stream not configured, completing story {state.story_id} without HLS")
        await self.complete_story(state.story_id)
        return {}

    async def complete_story(self, story_id: str, hls_url: Optional[str] = None) -> bool:
        fields = {"hls_url": hls_url} if hls_url else {}
        if not await self.registry.update_story_status(story_id, StoryStatus.COMPLETED, **fields):
            return False
        await self._publish(story_id, "story.completed", status=StoryStatus.COMPLETED.value, hls_url=hls_url)
        return True

    async def _publish(self, story_id: str, event_type: str, **payload):
        if self.events is not None:
            await self.events.publish(story_id, event_type, **payload)
