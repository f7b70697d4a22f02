"""
Usage (local):
  export BOT_TOKEN="..."
  python bot.py

Set WEBHOOK_URL to receive updates through a webhook instead of long polling.
"""

import html
import logging
import os
import re
import traceback

from telegram import InlineQueryResultCachedVideo, InputMediaPhoto, Update
from telegram.constants import ParseMode
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    InlineQueryHandler,
    MessageHandler,
    filters,
)

from tiktok_relay.media import UNKNOWN_TITLE, AllProvidersExhausted, MediaDownloadError
from tiktok_relay.pipeline import Delivery, MediaPipeline, Stage, build_pipeline
from tiktok_relay.selector import DeliveryKind

# -------------------------
# Configuration
# -------------------------
BOT_TOKEN = os.getenv("BOT_TOKEN", "").strip()
HEARTBEAT_INTERVAL_SECONDS = int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "300"))
ERROR_NOTICE_TTL_SECONDS = float(os.getenv("ERROR_NOTICE_TTL_SECONDS", "3"))
WEBHOOK_URL = os.getenv("WEBHOOK_URL", "").strip()
WEBHOOK_PATH = os.getenv("WEBHOOK_PATH", "telegram").strip("/")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "").strip()
PORT = int(os.getenv("PORT", "3000"))
CAPTION_MAX_LENGTH = 1024
LINK_ANCHOR_TEXT = "TikTok"

# -------------------------
# Logging
# -------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("tiktok-relay")
logging.getLogger("telegram").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

# -------------------------
# URL Detection
# -------------------------
TIKTOK_LINK_REGEX = re.compile(r"(?<![\w.-])(?:https?://)?(?:www\.|m\.|vm\.|vt\.)?tiktok\.com/[^\s]+", re.IGNORECASE)

STAGE_STATUS = {
    Stage.RESOLVING: "🔍 Looking up the video...",
    Stage.SELECTING: "🎞 Picking the best version...",
    Stage.FETCHING: "📥 Downloading media...",
}
LOADING_TEXT = "⏳ Downloading video..."
ERROR_NOTICE_TEXT = "❌ Couldn't download this video"


def extract_link(text: str) -> tuple[str, str] | None:
    """Return the first TikTok link as (text as written, fetchable URL)."""
    match = TIKTOK_LINK_REGEX.search(text or "")
    if not match:
        return None
    raw_link = match.group(0).rstrip(".,;:!?)]}>")
    link = raw_link if raw_link.lower().startswith(("http://", "https://")) else f"https://{raw_link}"
    return raw_link, link


def resolve_sender_name(user) -> str:
    if not user:
        return "unknown"
    if user.full_name:
        return user.full_name
    if user.username:
        return f"@{user.username}"
    return "unknown"


def build_caption(text: str, raw_link: str, link: str, sender_name: str, title: str | None = None) -> str:
    """HTML caption whose visible text fits Telegram's caption limit; user text is trimmed before the title."""
    before, _, after = (text or "").strip().partition(raw_link)
    title = title if title and title != UNKNOWN_TITLE else ""
    # lengths are counted on the visible text, before escaping
    fixed_length = len(sender_name) + len(": ") + len(LINK_ANCHOR_TEXT)
    title_length = len(title) + len("\n\n") if title else 0
    text_room = CAPTION_MAX_LENGTH - fixed_length - title_length
    if text_room < 0:
        title = title[: max(0, CAPTION_MAX_LENGTH - fixed_length - len("\n\n"))]
        text_room = 0
    before = before[:text_room]
    after = after[: text_room - len(before)]

    anchor = f'<a href="{html.escape(link, quote=True)}">{LINK_ANCHOR_TEXT}</a>'
    body = f"{html.escape(before)}{anchor}{html.escape(after)}".strip()
    caption = f"<b>{html.escape(sender_name)}</b>: {body}"
    if title:
        caption += f"\n\n{html.escape(title)}"
    return caption


# -------------------------
# Sending
# -------------------------
async def safe_edit_status(status_msg, text: str) -> None:
    if not status_msg:
        return
    try:
        await status_msg.edit_text(text)
    except Exception as edit_err:
        logger.info("Could not edit status message: %s", edit_err)


async def safe_delete(message) -> None:
    if not message:
        return
    try:
        await message.delete()
    except Exception as delete_err:
        logger.info("Could not delete message: %s", delete_err)


async def send_delivery(bot, chat_id: int, delivery: Delivery, caption: str) -> list:
    if delivery.kind == DeliveryKind.SLIDESHOW:
        if len(delivery.photos) == 1:
            # media groups need at least two items
            sent = [
                await bot.send_photo(
                    chat_id=chat_id,
                    photo=delivery.photos[0].data,
                    caption=caption,
                    parse_mode=ParseMode.HTML,
                )
            ]
        else:
            media_group = [
                InputMediaPhoto(
                    media=photo.data,
                    caption=caption if idx == 0 else None,
                    parse_mode=ParseMode.HTML if idx == 0 else None,
                )
                for idx, photo in enumerate(delivery.photos)
            ]
            sent = list(await bot.send_media_group(chat_id=chat_id, media=media_group))
        if delivery.audio:
            sent.append(
                await bot.send_audio(
                    chat_id=chat_id,
                    audio=delivery.audio.data,
                    title=delivery.title,
                    filename="sound.mp3",
                )
            )
        return sent

    if delivery.kind == DeliveryKind.VIDEO:
        sent = await bot.send_video(
            chat_id=chat_id,
            video=delivery.video.data,
            caption=caption,
            parse_mode=ParseMode.HTML,
            supports_streaming=True,
            filename="video.mp4",
        )
        return [sent]

    sent = await bot.send_audio(
        chat_id=chat_id,
        audio=delivery.audio.data,
        title=delivery.title,
        caption=caption,
        parse_mode=ParseMode.HTML,
        filename="sound.mp3",
    )
    return [sent]


async def delete_message_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    job = context.job
    try:
        await context.bot.delete_message(chat_id=job.chat_id, message_id=job.data)
    except Exception as delete_err:
        logger.info("Could not delete error notice: %s", delete_err)


async def notify_failure(context: ContextTypes.DEFAULT_TYPE, chat) -> None:
    try:
        notice = await chat.send_message(ERROR_NOTICE_TEXT)
    except Exception as send_err:
        logger.error("Could not send error notice: chat_id=%s err=%s", chat.id, send_err)
        return
    if context.job_queue is None:
        logger.warning("Job queue is unavailable; error notice stays: chat_id=%s", chat.id)
        return
    context.job_queue.run_once(
        delete_message_job,
        when=ERROR_NOTICE_TTL_SECONDS,
        chat_id=chat.id,
        data=notice.message_id,
    )


# -------------------------
# Handlers
# -------------------------
inline_cache: dict[str, str] = {}


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if not message or not message.text:
        return

    chat = update.effective_chat
    if not chat:
        return

    found = extract_link(message.text)
    if not found:
        return
    raw_link, link = found

    pipeline: MediaPipeline = context.bot_data["pipeline"]
    sender_name = resolve_sender_name(update.effective_user)
    status_msg = None

    try:
        status_msg = await chat.send_message(LOADING_TEXT)
        logger.info("Download started: chat_id=%s url=%s", chat.id, link)

        async def on_stage(stage: Stage) -> None:
            await safe_edit_status(status_msg, STAGE_STATUS[stage])

        delivery = await pipeline.prepare(link, on_stage=on_stage)
        caption = build_caption(message.text, raw_link, link, sender_name, delivery.title)
        await send_delivery(context.bot, chat.id, delivery, caption)
        logger.info(
            "Delivered: chat_id=%s url=%s kind=%s provider=%s",
            chat.id,
            link,
            delivery.kind.value,
            delivery.media_set.provider,
        )
        await safe_delete(message)
    except MediaDownloadError as e:
        logger.error("Error handling URL %s: %s", link, e)
        if isinstance(e, AllProvidersExhausted):
            for attempt in e.attempts:
                logger.info(
                    "Provider attempt: order=%s provider=%s outcome=%s reason=%s",
                    attempt.order,
                    attempt.provider,
                    attempt.outcome,
                    attempt.reason,
                )
        await notify_failure(context, chat)
    except Exception as e:
        logger.error("Unexpected error handling URL %s: %s", link, e)
        logger.error(traceback.format_exc())
        await notify_failure(context, chat)
    finally:
        await safe_delete(status_msg)


async def handle_inline_query(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    inline_query = update.inline_query
    if not inline_query:
        return

    found = extract_link((inline_query.query or "").strip())
    if not found:
        return
    raw_link, link = found

    cached_file_id = inline_cache.get(link)
    if cached_file_id:
        results = [
            InlineQueryResultCachedVideo(
                id=f"cached-{abs(hash(link))}",
                video_file_id=cached_file_id,
                title="TikTok",
            )
        ]
        await inline_query.answer(results=results, cache_time=60, is_personal=True)
        return

    # The video is sent to the user's private chat first; its file_id is then
    # offered as a cached inline result.
    pipeline: MediaPipeline = context.bot_data["pipeline"]
    user_id = inline_query.from_user.id
    caption = build_caption(raw_link, raw_link, link, resolve_sender_name(inline_query.from_user))
    try:
        logger.info("Inline download started: user_id=%s url=%s", user_id, link)
        delivery = await pipeline.prepare(link)
        sent = await send_delivery(context.bot, user_id, delivery, caption)
        file_id = None
        if delivery.kind == DeliveryKind.VIDEO and sent and sent[0].video:
            file_id = sent[0].video.file_id
        if not file_id:
            await inline_query.answer(results=[], cache_time=1, is_personal=True)
            return
        inline_cache[link] = file_id
        results = [
            InlineQueryResultCachedVideo(
                id=f"cached-{abs(hash(link))}",
                video_file_id=file_id,
                title=delivery.title,
            )
        ]
        await inline_query.answer(results=results, cache_time=60, is_personal=True)
    except Exception as e:
        logger.error("Error handling inline URL %s: %s", link, e)
        logger.error(traceback.format_exc())
        await inline_query.answer(results=[], cache_time=1, is_personal=True)
        try:
            await context.bot.send_message(chat_id=user_id, text="Error while downloading media. Try again later.")
        except Exception:
            logger.error("Failed to notify user in private chat: user_id=%s", user_id)


async def handle_about(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if not message:
        return
    await message.reply_text(
        "<b>TikTok relay bot</b>\nSend a TikTok link and the video, slideshow or sound is posted here.",
        parse_mode=ParseMode.HTML,
    )


async def log_heartbeat(_: ContextTypes.DEFAULT_TYPE) -> None:
    logger.info("Bot is listening...")


# -------------------------
# Main
# -------------------------
def main() -> None:
    if not BOT_TOKEN:
        raise RuntimeError("BOT_TOKEN is required.")

    app = (
        Application.builder()
        .token(BOT_TOKEN)
        .connect_timeout(60)
        .read_timeout(300)
        .write_timeout(300)
        .pool_timeout(60)
        .build()
    )
    app.bot_data["pipeline"] = build_pipeline()

    app.add_handler(CommandHandler("about", handle_about))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))
    app.add_handler(InlineQueryHandler(handle_inline_query))

    app.job_queue.run_repeating(log_heartbeat, interval=HEARTBEAT_INTERVAL_SECONDS, first=0)

    if WEBHOOK_URL:
        logger.info("Bot started. Serving webhook on port %s...", PORT)
        app.run_webhook(
            listen="0.0.0.0",
            port=PORT,
            url_path=WEBHOOK_PATH,
            secret_token=WEBHOOK_SECRET or None,
            webhook_url=f"{WEBHOOK_URL.rstrip('/')}/{WEBHOOK_PATH}",
        )
        return

    logger.info("Bot started. Polling and waiting for updates...")
    app.run_polling(close_loop=False)


if __name__ == "__main__":
    main()
