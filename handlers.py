"""
Telegram handlers: commands, links, uploads, interactive choices and payments.
"""

import logging
from datetime import datetime, timezone

from aiogram import Dispatcher, F
from aiogram.filters import Command
from aiogram.types import (
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    LabeledPrice,
    Message,
    PreCheckoutQuery,
)

from config import PAYMENT_PAYLOAD_PREFIX, Settings
from errors import BotError, error_manager
from messaging import FORMAT_PREFIX, QUALITY_PREFIX, decode_choice
from models import TaskStatus
from pipeline import PipelineOrchestrator
from subscriptions import SubscriptionLedger
from utils import find_first_url, is_supported_url, sanitize_user_input, validate_url_input

logger = logging.getLogger(__name__)

BUY_PREMIUM = "buy_premium"

STATUS_LABELS = {
    TaskStatus.PENDING: "⏳ Ожидает",
    TaskStatus.DOWNLOADING: "📥 Загрузка",
    TaskStatus.CONVERTING: "🔄 Конвертация",
    TaskStatus.UPLOADING: "📤 Отправка",
}


def format_expiry(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%d.%m.%Y %H:%M UTC")


class BotHandlers:
    """Registers bot commands and the link/upload driven pipeline flow."""

    def __init__(
        self,
        dp: Dispatcher,
        orchestrator: PipelineOrchestrator,
        ledger: SubscriptionLedger,
        settings: Settings,
    ):
        self.dp = dp
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.settings = settings
        self._register_handlers()

    def _register_handlers(self) -> None:
        self.dp.message.register(self.handle_start, Command(commands=["start"]))
        self.dp.message.register(self.handle_help, Command(commands=["help"]))
        self.dp.message.register(self.handle_premium, Command(commands=["premium"]))
        self.dp.message.register(self.handle_grant, Command(commands=["grant"]))
        self.dp.message.register(self.handle_queue, Command(commands=["queue"]))
        self.dp.message.register(self.handle_cancel, Command(commands=["cancel"]))
        self.dp.message.register(self.handle_successful_payment, F.successful_payment)
        self.dp.message.register(self.handle_video_message, F.video)
        self.dp.message.register(self.handle_url_message)
        self.dp.callback_query.register(
            self.handle_quality_callback,
            lambda callback: (callback.data or "").startswith(f"{QUALITY_PREFIX}:"),
        )
        self.dp.callback_query.register(
            self.handle_format_callback,
            lambda callback: (callback.data or "").startswith(f"{FORMAT_PREFIX}:"),
        )
        self.dp.callback_query.register(self.handle_buy_premium, F.data == BUY_PREMIUM)
        self.dp.pre_checkout_query.register(self.handle_pre_checkout)

    async def handle_start(self, message: Message) -> None:
        username = message.from_user.username or "друг"
        text = (
            f"👋 Привет, {username}!\n\n"
            "Я скачиваю видео по ссылке и конвертирую его в видео, аудио, "
            "кружочек или голосовое.\n\n"
            "Просто отправь ссылку или само видео, затем выбери качество и формат.\n"
            "Доступ открывается Premium-подпиской: /premium"
        )
        await message.answer(text)

    async def handle_help(self, message: Message) -> None:
        text = (
            "📖 <b>Как пользоваться</b>\n\n"
            "1. Отправьте ссылку на видео или загрузите видеофайл.\n"
            "2. Выберите качество (или «Другой формат»).\n"
            "3. Выберите формат, если бот предложит.\n"
            "4. Дождитесь файла.\n\n"
            "/queue - ваши задачи\n"
            "/cancel - отменить незавершённый выбор\n"
            "/premium - подписка"
        )
        await message.answer(text, parse_mode="HTML")

    async def handle_url_message(self, message: Message) -> None:
        text = sanitize_user_input(message.text or "")
        if not text or text.startswith("/"):
            return

        url = find_first_url(text)
        if not url:
            await message.answer("❌ Не нашёл ссылку в сообщении. Отправьте URL напрямую.")
            return

        valid, error = validate_url_input(url)
        if not valid:
            await message.answer(f"❌ {error}")
            return

        if not is_supported_url(url):
            await message.answer("❌ Ссылка не поддерживается. Отправьте ссылку на поддерживаемый сервис.")
            return

        try:
            await self.orchestrator.handle_link(message.from_user.id, message.chat.id, url)
        except BotError as error:
            logger.error("Link admission failed for chat %s", message.chat.id, exc_info=True)
            await message.answer(error_manager.to_user_message(error))

    async def handle_video_message(self, message: Message) -> None:
        video = message.video
        try:
            await self.orchestrator.handle_video_upload(
                message.from_user.id,
                message.chat.id,
                video.file_id,
                video.file_unique_id,
            )
        except BotError as error:
            logger.error("Upload admission failed for chat %s", message.chat.id, exc_info=True)
            await message.answer(error_manager.to_user_message(error))

    async def handle_quality_callback(self, callback: CallbackQuery) -> None:
        choice = decode_choice(callback.data)
        if choice is None or callback.message is None:
            await callback.answer("Некорректные данные кнопки.", show_alert=True)
            return

        await callback.answer()
        try:
            await self.orchestrator.handle_quality_choice(
                callback.message.chat.id, choice.short_id, choice.value
            )
        except BotError:
            logger.error("Quality choice failed (data=%s)", callback.data, exc_info=True)

    async def handle_format_callback(self, callback: CallbackQuery) -> None:
        choice = decode_choice(callback.data)
        if choice is None or callback.message is None:
            await callback.answer("Некорректные данные кнопки.", show_alert=True)
            return

        await callback.answer()
        try:
            await self.orchestrator.handle_format_choice(
                callback.message.chat.id, choice.short_id, choice.value
            )
        except BotError:
            logger.error("Format choice failed (data=%s)", callback.data, exc_info=True)

    async def handle_queue(self, message: Message) -> None:
        queued, tasks = await self.orchestrator.queue_status(message.chat.id)
        lines = [f"📊 В очереди: {queued} задач" if queued else "📊 Очередь пуста", ""]
        if not tasks:
            lines.append("У вас нет активных задач.")
        else:
            lines.append("Ваши задачи:")
            for task in tasks:
                detail = task.quality or task.format or task.task_type.value
                lines.append(f"• {STATUS_LABELS.get(task.status, task.status.value)} ({detail})")
        await message.answer("\n".join(lines))

    async def handle_cancel(self, message: Message) -> None:
        cancelled = await self.orchestrator.cancel_pending(message.chat.id)
        if cancelled:
            await message.answer("🚫 Загрузка отменена.")
        else:
            await message.answer("Нечего отменять. Уже запущенные задачи завершатся сами.")

    async def handle_premium(self, message: Message) -> None:
        info = await self.ledger.info(message.from_user.id)
        if info.active:
            text = (
                "<b>Premium-подписка активна</b>\n\n"
                f"Осталось дней: <b>{info.days_left}</b>\n"
                f"Действует до: {format_expiry(info.expires_at)}"
            )
        elif info.exists:
            text = (
                "<b>Подписка истекла</b>\n\n"
                f"Истекла: {format_expiry(info.expires_at)}\n\n"
                "Продлите подписку, чтобы снова скачивать видео."
            )
        else:
            text = "<b>У вас нет Premium-подписки</b>\n\nОформите подписку, чтобы скачивать видео."

        keyboard = InlineKeyboardMarkup(
            inline_keyboard=[
                [
                    InlineKeyboardButton(
                        text=(
                            f"Купить за {self.settings.subscription_price_stars} Stars "
                            f"({self.settings.subscription_days} дней)"
                        ),
                        callback_data=BUY_PREMIUM,
                    )
                ]
            ]
        )
        await message.answer(text, parse_mode="HTML", reply_markup=keyboard)

    async def handle_buy_premium(self, callback: CallbackQuery) -> None:
        await callback.answer()
        if callback.message is None:
            return
        await callback.message.answer_invoice(
            title="Premium-подписка",
            description=f"Доступ к загрузке и конвертации на {self.settings.subscription_days} дней",
            payload=f"{PAYMENT_PAYLOAD_PREFIX}{callback.from_user.id}",
            currency="XTR",
            prices=[LabeledPrice(label="Premium-подписка", amount=self.settings.subscription_price_stars)],
        )

    async def handle_pre_checkout(self, query: PreCheckoutQuery) -> None:
        if query.invoice_payload.startswith(PAYMENT_PAYLOAD_PREFIX):
            await query.answer(ok=True)
        else:
            await query.answer(ok=False, error_message="Неизвестный платёж")

    async def handle_successful_payment(self, message: Message) -> None:
        payment = message.successful_payment
        raw_user_id = payment.invoice_payload.removeprefix(PAYMENT_PAYLOAD_PREFIX)
        if not raw_user_id.isdigit():
            logger.error("Unexpected payment payload: %s", payment.invoice_payload)
            return

        until = await self.ledger.extend(int(raw_user_id), self.settings.subscription_days)
        logger.info("Subscription paid by user %s until %s", raw_user_id, until)
        await message.answer(f"✅ Premium-подписка активна до {format_expiry(until)}")

    async def handle_grant(self, message: Message) -> None:
        admin_id = self.settings.admin_id
        if admin_id is None or message.from_user.id != admin_id:
            return

        parts = (message.text or "").split()
        if len(parts) != 3 or not parts[1].isdigit() or not parts[2].lstrip("-").isdigit():
            await message.answer("Usage: /grant <user_id> <days>\nExample: /grant 123456789 30")
            return

        user_id, days = int(parts[1]), int(parts[2])
        until = await self.ledger.extend(user_id, days)
        await message.answer(
            f"Subscription granted!\n\nUser: {user_id}\nDays: {days}\nExpires: {format_expiry(until)}"
        )
