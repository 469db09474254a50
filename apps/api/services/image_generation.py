"""Image generation against an OpenAI-compatible API and the RQ job pipeline."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

from openai import OpenAI, OpenAIError

from config import require_openai_api_key, settings
from database import async_session_maker
from models.generation_history import GenerationHistory
from services.credits import refund_if_needed
from services.tasks import (
    TaskConflictError,
    get_task,
    mark_completed,
    mark_failed,
    mark_processing,
    update_progress,
)

logger = logging.getLogger(__name__)

IMAGE_MODEL_PREFIXES = ("dall-e", "gpt-image")
DEFAULT_PROMPT = "生成图像"
STYLE_PROMPTS = {
    "自定义": "{prompt}",
    "吉卜力": "{prompt}，吉卜力风格",
    "乐高": "{prompt}，风格：乐高",
    "皮克斯": "{prompt}，风格：皮克斯",
    "新海诚": (
        "{prompt}，风格：Hyper-detailed realism, photorealistic backgrounds, vibrant saturated colors, "
        "soft diffused lighting, dreamlike ethereal atmosphere, cinematic depth"
    ),
    "迪士尼": "{prompt}，风格：disney animation style,soft shading,magical atmosphere",
    "动物森友会": "{prompt}，风格：3d动森风格",
}

_IMAGE_URL_RE = re.compile(r"(https?://[^\s\"'<>()]+\.(?:jpe?g|png|gif|webp|bmp))", re.IGNORECASE)
_MARKDOWN_IMAGE_RE = re.compile(r"!\[.*?\]\((https?://[^\s)\"'<>]+)\)", re.IGNORECASE)
_HTML_IMAGE_RE = re.compile(r"<img.*?src=[\"'](https?://[^\s\"'<>]+)[\"']", re.IGNORECASE)
_ANY_URL_RE = re.compile(r"(https?://[^\s\"'<>()]+)", re.IGNORECASE)


class ImageGenerationError(Exception):
    pass


def get_openai_client() -> OpenAI:
    try:
        api_key = require_openai_api_key()
    except ValueError as exc:
        raise ImageGenerationError(str(exc)) from exc
    return OpenAI(
        api_key=api_key,
        base_url=settings.OPENAI_BASE_URL or None,
        timeout=float(settings.OPENAI_TIMEOUT_SECONDS),
    )


def apply_style(prompt: str, style: Optional[str]) -> str:
    base_prompt = (prompt or "").strip() or DEFAULT_PROMPT
    template = STYLE_PROMPTS.get(style or "")
    if not template:
        return base_prompt
    return template.replace("{prompt}", base_prompt)


def size_for_aspect_ratio(aspect_ratio: Optional[str]) -> str:
    """Map "W:H" onto the closest supported output size."""
    if not aspect_ratio or ":" not in aspect_ratio:
        return "1024x1024"
    width, _, height = aspect_ratio.partition(":")
    try:
        ratio = float(width) / float(height)
    except (ValueError, ZeroDivisionError):
        return "1024x1024"
    if ratio > 1.2:
        return "1792x1024"
    if ratio < 0.8:
        return "1024x1792"
    return "1024x1024"


def extract_image_url(content: str) -> Optional[str]:
    """Pull an image URL out of a chat completion's text."""
    if not content:
        return None
    for pattern in (_IMAGE_URL_RE, _MARKDOWN_IMAGE_RE, _HTML_IMAGE_RE, _ANY_URL_RE):
        match = pattern.search(content)
        if match:
            return match.group(1)
    return None


def _generate_with_images_api(client: OpenAI, model: str, prompt: str, size: str) -> str:
    response = client.images.generate(
        model=model,
        prompt=prompt,
        n=1,
        size=size,
        quality="hd",
        style="vivid",
        response_format="url",
    )
    image_url = response.data[0].url if response.data else None
    if not image_url:
        raise ImageGenerationError("Image API returned no image URL")
    return image_url


def generate_image(
    prompt: str,
    style: Optional[str] = None,
    aspect_ratio: Optional[str] = None,
    model: Optional[str] = None,
) -> str:
    """Generate one image and return its URL.

    Chat models answer with the URL inside their text; if that fails the
    configured image model is used instead.
    """
    client = get_openai_client()
    full_prompt = apply_style(prompt, style)
    size = size_for_aspect_ratio(aspect_ratio)
    model = model or settings.OPENAI_MODEL

    if model.startswith(IMAGE_MODEL_PREFIXES):
        return _generate_with_images_api(client, model, full_prompt, size)

    try:
        completion = client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": f"{full_prompt}。请将此描述转换为图像。"}],
            max_tokens=1000,
            temperature=0.7,
        )
        content = completion.choices[0].message.content if completion.choices else None
        image_url = extract_image_url(content or "")
        if not image_url:
            raise ImageGenerationError("No image URL in chat completion")
        return image_url
    except (OpenAIError, ImageGenerationError) as exc:
        fallback = settings.OPENAI_FALLBACK_IMAGE_MODEL
        logger.warning("Chat image generation with %s failed (%s); falling back to %s", model, exc, fallback)
        return _generate_with_images_api(client, fallback, full_prompt, size)


async def _report_progress(task_id: str, progress: int, stage: str, db) -> None:
    try:
        await update_progress(task_id, progress, stage, db)
    except TaskConflictError:
        logger.warning("Skipped progress %s%% for task %s after repeated conflicts", progress, task_id)


async def process_image_task_async(task_id: str) -> None:
    """Async image pipeline executed by RQ worker wrapper."""
    async with async_session_maker() as db:
        task = await get_task(task_id, db)
        if task is None:
            logger.warning("Image task %s not found", task_id)
            return
        if task.status != "pending":
            logger.info("Skipping image task %s in status %s", task_id, task.status)
            return

        started = await mark_processing(task_id, db)
        if not started.changed:
            return
        user_id = task.user_id
        prompt, style, aspect_ratio, model = task.prompt, task.style, task.aspect_ratio, task.model

        try:
            await _report_progress(task_id, 10, "configuring", db)
            await _report_progress(task_id, 30, "sending_request", db)
            image_url = await asyncio.to_thread(generate_image, prompt, style, aspect_ratio, model)
            await _report_progress(task_id, 90, "finalizing", db)
            completed = await mark_completed(task_id, image_url, db)
        except Exception as exc:
            logger.exception("Image task %s failed", task_id)
            await db.rollback()
            await mark_failed(task_id, str(exc) or exc.__class__.__name__, db)
            await refund_if_needed(task_id, db)
            return

        if not completed.changed:
            logger.info("Discarding image for task %s (status %s)", task_id, completed.status)
            return

        db.add(
            GenerationHistory(
                user_id=user_id,
                task_id=task_id,
                image_url=image_url,
                prompt=prompt,
                style=style,
                aspect_ratio=aspect_ratio,
                model_used=model,
            )
        )
        await db.commit()
        logger.info("Image task %s completed", task_id)


def process_image_task_job(task_id: str) -> None:
    """RQ worker entrypoint for image generation jobs."""
    asyncio.run(process_image_task_async(task_id))
