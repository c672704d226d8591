import re
import sys
import asyncio
import logging
import argparse

from telegram import Update, BotCommand, ReplyKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import Conflict, TimedOut, NetworkError, RetryAfter
from telegram.ext import Application, ContextTypes, MessageHandler, filters
from telegram.request import HTTPXRequest

import config
from config import ServerRegistry, UserDirectory, load_config, save_accounts
from conversation import BOT_COMMANDS, ConversationEngine
from errors import ConfigError
from olap import OlapService
from resto_api import RestoClient
from sessions import SessionManager
from shifts import ShiftService

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

# Silence noisy third-party loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)
logging.getLogger("telegram").setLevel(logging.WARNING)

# Telegram request configuration
REQUEST_READ_TIMEOUT = 30
REQUEST_WRITE_TIMEOUT = 30
REQUEST_CONNECT_TIMEOUT = 15
REQUEST_POOL_TIMEOUT = 10
MAX_RETRIES = 3
RETRY_DELAY = 1  # Base delay in seconds for exponential backoff


def build_engine(settings, client=None):
    """Wire the services, shared state and conversation engine together."""
    client = client or RestoClient()
    registry = ServerRegistry(settings.servers)
    users = UserDirectory(
        settings.accounts,
        settings.admins,
        persist=lambda accounts: save_accounts(settings.path, accounts),
    )
    return ConversationEngine(
        credentials=settings.credentials,
        registry=registry,
        users=users,
        sessions=SessionManager(client),
        shift_service=ShiftService(client),
        olap_service=OlapService(client),
    )


def apply_log_level(level_name):
    log_level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(log_level)
    logging.getLogger().setLevel(log_level)


async def retry_async(coro_func, *args, max_retries=MAX_RETRIES, **kwargs):
    """Retry a Telegram call with exponential backoff."""
    last_exception = None

    for attempt in range(max_retries):
        try:
            return await coro_func(*args, **kwargs)
        except RetryAfter as e:
            wait_time = e.retry_after + 1
            logger.warning(f"Rate limited, waiting {wait_time}s before retry")
            await asyncio.sleep(wait_time)
            last_exception = e
        except TimedOut as e:
            wait_time = RETRY_DELAY * (2 ** attempt)
            logger.warning(f"Request timed out (attempt {attempt + 1}/{max_retries}), retrying in {wait_time}s")
            await asyncio.sleep(wait_time)
            last_exception = e
        except Conflict as e:
            # Don't retry conflicts - this means another instance is running
            logger.error(f"Bot conflict detected: {e}")
            raise
        except NetworkError as e:
            wait_time = RETRY_DELAY * (2 ** attempt)
            logger.warning(f"Network error (attempt {attempt + 1}/{max_retries}): {e}, retrying in {wait_time}s")
            await asyncio.sleep(wait_time)
            last_exception = e

    # All retries exhausted
    logger.error(f"All {max_retries} retries exhausted")
    if last_exception:
        raise last_exception


def reply_markup(reply):
    if not reply.keyboard:
        return None
    return ReplyKeyboardMarkup(reply.keyboard, resize_keyboard=True, one_time_keyboard=True)


async def send_replies(message, replies):
    """Send engine replies to the chat in order."""
    for reply in replies:
        await retry_async(
            message.reply_text,
            reply.text,
            parse_mode=ParseMode.MARKDOWN_V2 if reply.markdown else None,
            reply_markup=reply_markup(reply),
        )


async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Feed every text message into the conversation engine."""
    message = update.effective_message
    if message is None or message.text is None:
        return

    engine = context.application.bot_data['engine']
    user = update.effective_user
    username = user.username if user else None

    replies = await engine.handle(update.effective_chat.id, username, message.text)
    await send_replies(message, replies)


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Log errors that escaped the conversation engine."""
    logger.error(f"Unhandled error while processing update: {context.error}", exc_info=context.error)


async def startup(application):
    """Register the command menu before polling begins."""
    logger.info("Running startup tasks...")
    commands = [BotCommand(name, description) for name, _, description in BOT_COMMANDS]
    try:
        await application.bot.set_my_commands(commands)
    except NetworkError as e:
        logger.warning(f"Failed to register bot commands: {e}")
    logger.info("Startup complete")


async def shutdown(application):
    """Log out of every server session when the bot stops."""
    logger.info("Shutting down...")
    engine = application.bot_data.get('engine')
    if engine:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, engine.sessions.release_all)
        engine.sessions.client.close()
    logger.info("Shutdown complete")


# ============================================================
# CLI Test Mode - for local testing without Telegram
# ============================================================

def print_reply(reply):
    text = reply.text
    if reply.markdown:
        # Drop MarkdownV2 escapes and emphasis for the terminal
        text = re.sub(r'\\(.)', r'\1', text.replace('*', ''))
    print(f"\n{text}")
    if reply.keyboard:
        for row in reply.keyboard:
            print("  " + " | ".join(f"[{button}]" for button in row))


async def cli_mode(settings):
    """Run the conversation engine against stdin instead of Telegram."""
    print("=" * 60)
    print("CLI Test Mode - type menu buttons or commands like /today")
    print("Type 'exit' or 'quit' to stop")
    print("=" * 60)

    if not settings.admins:
        print("No admins configured - add one to 'admins' in the config file")
        return

    engine = build_engine(settings)
    cli_user = settings.admins[0]
    cli_chat_id = "cli_test_chat"
    print(f"\nActing as admin @{cli_user}")

    try:
        while True:
            try:
                user_input = input("\n> ").strip()
            except EOFError:
                break

            if user_input.lower() in ('exit', 'quit'):
                print("Exiting CLI mode...")
                break

            for reply in await engine.handle(cli_chat_id, cli_user, user_input):
                print_reply(reply)
    finally:
        engine.sessions.release_all()
        engine.sessions.client.close()


def main(settings):
    """Start the bot."""
    if not settings.bot_token:
        logger.error("TELEGRAM_BOT_TOKEN not set (env var or config file)")
        return

    request = HTTPXRequest(
        connection_pool_size=8,
        read_timeout=REQUEST_READ_TIMEOUT,
        write_timeout=REQUEST_WRITE_TIMEOUT,
        connect_timeout=REQUEST_CONNECT_TIMEOUT,
        pool_timeout=REQUEST_POOL_TIMEOUT,
    )

    application = (
        Application.builder()
        .token(settings.bot_token)
        .request(request)
        .concurrent_updates(True)
        .post_init(startup)
        .post_shutdown(shutdown)
        .build()
    )
    application.bot_data['engine'] = build_engine(settings)

    application.add_handler(MessageHandler(filters.TEXT, on_message))
    application.add_error_handler(on_error)

    logger.info("Starting bot...")
    try:
        application.run_polling(
            drop_pending_updates=True,  # Ignore updates that arrived while bot was offline
            allowed_updates=Update.ALL_TYPES,
        )
    except Conflict as e:
        logger.error(f"Bot conflict error: {e}")
        logger.error("Another instance is running. Please stop other instances and try again.")
        sys.exit(1)


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Resto POS report Telegram bot')
    parser.add_argument('--cli', action='store_true', help='Run in CLI test mode (no Telegram)')
    parser.add_argument('--config', default=config.CONFIG_FILE, help='Path to the JSON config file')
    args = parser.parse_args()

    try:
        settings = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)
    apply_log_level(settings.log_level)

    if args.cli:
        asyncio.run(cli_mode(settings))
    else:
        main(settings)
