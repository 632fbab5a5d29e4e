import logging
from typing import Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update, WebAppInfo
from telegram.constants import ChatAction
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes

from hookah_wishlist.wishlist_core.config import Settings, get_settings
from hookah_wishlist.wishlist_core.hookah_db import CatalogError, HookahDbClient
from hookah_wishlist.wishlist_core.search import SearchService, format_search_results
from hookah_wishlist.wishlist_core.storage import StorageError, build_storage
from hookah_wishlist.wishlist_core.wishlist import (
    DuplicateWishlistItemError,
    WishlistItemNotFoundError,
    WishlistNotFoundError,
    WishlistService,
    format_wishlist,
)

logger = logging.getLogger(__name__)

SEARCH_SERVICE_KEY = "search_service"
WISHLIST_SERVICE_KEY = "wishlist_service"
MINI_APP_URL_KEY = "mini_app_url"
LAST_SEARCH_QUERY_KEY = "last_search_query"
SEARCH_PAGE_SIZE = 10

UNKNOWN_USER_TEXT = "❌ Unable to identify user. Please try again."
EMPTY_WISHLIST_TEXT = (
    "📋 Your wishlist is empty.\n\n"
    "Use /search to find tobaccos and /add to add them to your wishlist."
)

START_TEXT = (
    "👋 Welcome to Hookah Wishlist{name}!\n\n"
    "I help you keep track of tobaccos you want to try.\n\n"
    "🔍 /search <query> - find tobaccos\n"
    "📋 /wishlist - show your wishlist\n"
    "➕ /add <tobacco_id> - add to wishlist\n"
    "➖ /remove <tobacco_id> - remove from wishlist\n"
    "🗑️ /clear - clear your wishlist\n"
    "📱 /app - open the Mini App\n"
    "❓ /help - show all commands"
)

HELP_TEXT = (
    "📚 Help - Available Commands\n\n"
    "🔍 Search & Browse:\n"
    "/search <query> - Search for tobaccos by name or brand\n\n"
    "📋 Wishlist Management:\n"
    "/wishlist - View your current wishlist\n"
    "/add <tobacco_id> - Add tobacco to wishlist\n"
    "/remove <tobacco_id> - Remove from wishlist\n"
    "/clear - Remove every item from your wishlist\n\n"
    "ℹ️ General:\n"
    "/start - Show welcome message\n"
    "/app - Open the Mini App\n"
    "/help - Show this help message\n\n"
    "💡 Tips:\n"
    "• Use specific search terms for better results\n"
    "• Your wishlist is saved automatically\n"
    "• Open the mini-app for a visual interface"
)


def _search_service(context: ContextTypes.DEFAULT_TYPE) -> SearchService:
    return context.bot_data[SEARCH_SERVICE_KEY]


def _wishlist_service(context: ContextTypes.DEFAULT_TYPE) -> WishlistService:
    return context.bot_data[WISHLIST_SERVICE_KEY]


def _command_argument(context: ContextTypes.DEFAULT_TYPE) -> str:
    return " ".join(context.args).strip() if context.args else ""


def _user_id(update: Update) -> Optional[int]:
    user = update.effective_user
    return user.id if user else None


async def _send_typing(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_chat:
        await context.bot.send_chat_action(chat_id=update.effective_chat.id, action=ChatAction.TYPING)


def _mini_app_markup(url: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton(text="📱 Open Mini App", web_app=WebAppInfo(url=url))]])


async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    user = update.effective_user
    logger.info("/start from user %s", _user_id(update))
    name = f", {user.first_name}" if user and user.first_name else ""
    mini_app_url = context.bot_data.get(MINI_APP_URL_KEY) or ""
    await update.message.reply_text(
        START_TEXT.format(name=name),
        reply_markup=_mini_app_markup(mini_app_url) if mini_app_url else None,
    )


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    logger.info("/help from user %s", _user_id(update))
    await update.message.reply_text(HELP_TEXT)


async def app_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    mini_app_url = context.bot_data.get(MINI_APP_URL_KEY) or ""
    if not mini_app_url:
        await update.message.reply_text("📱 The Mini App is not configured yet. Use /help to see bot commands.")
        return
    await update.message.reply_text(
        "📱 Open the Mini App to search and manage your wishlist:",
        reply_markup=_mini_app_markup(mini_app_url),
    )


async def search(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    query = _command_argument(context)
    logger.info("/search from user %s with query %r", _user_id(update), query)
    if not query:
        await update.message.reply_text(
            "Please provide a search query.\n\nUsage: /search <query>\n\nExample: /search Al Fakher"
        )
        return

    context.user_data[LAST_SEARCH_QUERY_KEY] = query
    try:
        await _send_typing(update, context)
        result = await _search_service(context).search(query, 1, SEARCH_PAGE_SIZE)
    except CatalogError:
        logger.exception("Search command failed for query %r", query)
        await update.message.reply_text("❌ Sorry, an error occurred while searching. Please try again later.")
        return

    await update.message.reply_text(format_search_results(result.results, result.page, result.total))


async def add(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    user_id = _user_id(update)
    tobacco_id = _command_argument(context)
    logger.info("/add from user %s for tobacco %s", user_id, tobacco_id)
    if user_id is None:
        await update.message.reply_text(UNKNOWN_USER_TEXT)
        return
    if not tobacco_id:
        await update.message.reply_text(
            "Please provide a tobacco ID.\n\nUsage: /add <tobacco_id>\n\nExample: /add 12345\n\n"
            "💡 Tip: Use /search to find tobacco IDs."
        )
        return

    try:
        await _send_typing(update, context)
        tobacco = await _search_service(context).get_tobacco_details(tobacco_id)
        if tobacco is None:
            await update.message.reply_text(
                f'❌ Tobacco with ID "{tobacco_id}" not found.\n\n💡 Tip: Use /search to find valid tobacco IDs.'
            )
            return
        _wishlist_service(context).add_item(user_id, tobacco_id)
    except DuplicateWishlistItemError:
        await update.message.reply_text(
            "❌ This tobacco is already in your wishlist.\n\nUse /wishlist to view your wishlist."
        )
        return
    except (CatalogError, StorageError):
        logger.exception("Add command failed for tobacco %s", tobacco_id)
        await update.message.reply_text(
            "❌ Sorry, an error occurred while adding to wishlist. Please try again later."
        )
        return

    lines = ["✅ Successfully added to wishlist!", "", f"📦 {tobacco.brand} - {tobacco.name}", f"🏷️ ID: {tobacco_id}"]
    if tobacco.flavor:
        lines.append(f"🍃 Flavor: {tobacco.flavor}")
    lines.extend(["", "Use /wishlist to view your wishlist."])
    await update.message.reply_text("\n".join(lines))


async def remove(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    user_id = _user_id(update)
    tobacco_id = _command_argument(context)
    logger.info("/remove from user %s for tobacco %s", user_id, tobacco_id)
    if user_id is None:
        await update.message.reply_text(UNKNOWN_USER_TEXT)
        return
    if not tobacco_id:
        await update.message.reply_text(
            "Please provide a tobacco ID.\n\nUsage: /remove <tobacco_id>\n\nExample: /remove 12345\n\n"
            "💡 Tip: Use /wishlist to see tobacco IDs in your wishlist."
        )
        return

    try:
        _wishlist_service(context).remove_item(user_id, tobacco_id)
    except WishlistNotFoundError:
        await update.message.reply_text("❌ Your wishlist is empty. Nothing to remove.")
        return
    except WishlistItemNotFoundError:
        await update.message.reply_text(
            f'❌ Tobacco with ID "{tobacco_id}" not found in your wishlist.\n\n'
            "💡 Tip: Use /wishlist to see tobacco IDs in your wishlist."
        )
        return
    except StorageError:
        logger.exception("Remove command failed for tobacco %s", tobacco_id)
        await update.message.reply_text(
            "❌ Sorry, an error occurred while removing from wishlist. Please try again later."
        )
        return

    await update.message.reply_text(
        "✅ Successfully removed from wishlist!\n\n"
        f"🏷️ Removed tobacco ID: {tobacco_id}\n\n"
        "Use /wishlist to view your updated wishlist."
    )


async def wishlist(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    user_id = _user_id(update)
    logger.info("/wishlist from user %s", user_id)
    if user_id is None:
        await update.message.reply_text(UNKNOWN_USER_TEXT)
        return

    try:
        await _send_typing(update, context)
        details = await _wishlist_service(context).get_wishlist_with_details(user_id)
    except StorageError:
        logger.exception("Wishlist command failed for user %s", user_id)
        await update.message.reply_text(
            "❌ Sorry, an error occurred while retrieving your wishlist. Please try again later."
        )
        return

    await update.message.reply_text(format_wishlist(details))


async def clear(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message:
        return
    user_id = _user_id(update)
    logger.info("/clear from user %s", user_id)
    if user_id is None:
        await update.message.reply_text(UNKNOWN_USER_TEXT)
        return

    try:
        _wishlist_service(context).clear_wishlist(user_id)
    except WishlistNotFoundError:
        await update.message.reply_text(EMPTY_WISHLIST_TEXT)
        return
    except StorageError:
        logger.exception("Clear command failed for user %s", user_id)
        await update.message.reply_text(
            "❌ Sorry, an error occurred while clearing your wishlist. Please try again later."
        )
        return

    await update.message.reply_text("🗑️ Your wishlist has been cleared.")


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing update", exc_info=context.error)


def build_application(settings: Settings) -> Application:
    if not settings.telegram_bot_token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set. Fill .env before running.")

    search_service = SearchService(HookahDbClient.from_settings(settings))
    application = ApplicationBuilder().token(settings.telegram_bot_token).build()
    application.bot_data[SEARCH_SERVICE_KEY] = search_service
    application.bot_data[WISHLIST_SERVICE_KEY] = WishlistService(build_storage(settings), search_service)
    application.bot_data[MINI_APP_URL_KEY] = settings.mini_app_url

    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("app", app_command))
    application.add_handler(CommandHandler("search", search))
    application.add_handler(CommandHandler("add", add))
    application.add_handler(CommandHandler("remove", remove))
    application.add_handler(CommandHandler("wishlist", wishlist))
    application.add_handler(CommandHandler("clear", clear))
    application.add_error_handler(on_error)
    return application


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        level=getattr(logging, settings.log_level, logging.INFO),
    )
    application = build_application(settings)
    logger.info("Starting Telegram bot polling...")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
