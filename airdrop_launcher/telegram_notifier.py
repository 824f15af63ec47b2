import html
import logging
from typing import Any, Dict, Optional

import requests

from .config import AppConfig, format_base_units
from .models import Failure, Outcome, VerificationReport

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """A simple utility class for sending Telegram notifications to admin chat."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.bot_token = config.telegram.bot_token
        self.admin_chat_id = config.telegram.admin_chat_id

        # Flag to track if notifications are enabled
        self.enabled = bool(self.bot_token and self.admin_chat_id)

        if not self.enabled:
            logger.warning("Telegram notifications disabled: missing TELEGRAM_BOT_TOKEN or TELEGRAM_ADMIN_CHAT_ID")
        else:
            logger.info(f"Telegram notifier initialized. Admin chat ID: {self.admin_chat_id}")

    def send_message(self, message: str) -> Dict[str, Any]:
        """Send a message to the admin Telegram chat.

        Args:
            message: The text message to send (HTML formatted)

        Returns:
            Dict with status and details about the attempt
        """
        if not self.enabled:
            logger.info("Telegram notification skipped (not configured)")
            return {
                "success": False,
                "sent": False,
                "error": "Telegram notifications not configured (missing bot_token or admin_chat_id)",
                "message": message
            }

        api_url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": self.admin_chat_id,
            "text": message,
            "parse_mode": "HTML",
            "disable_web_page_preview": True
        }

        try:
            response = requests.post(api_url, json=payload, timeout=10)
        except requests.exceptions.RequestException as e:
            error_msg = f"Error sending Telegram notification: {e}"
            logger.error(error_msg, exc_info=True)
            return {"success": False, "sent": False, "error": error_msg, "message": message}

        if response.status_code == 200:
            logger.info("Telegram notification sent successfully")
            return {"success": True, "sent": True, "message": message}

        error_msg = f"Failed to send Telegram notification. Status: {response.status_code}, Response: {response.text}"
        logger.error(error_msg)
        return {
            "success": False,
            "sent": False,
            "error": error_msg,
            "status_code": response.status_code,
            "message": message
        }

    def notify_outcome(self, action_label: str, outcome: Outcome,
                       verification: Optional[VerificationReport] = None,
                       amount_base_units: Optional[int] = None) -> Dict[str, Any]:
        """Send a summary of a finished deploy or transfer run."""
        network = self.config.network
        title = f"{action_label.upper()} on {html.escape(network.network_name)}"

        if isinstance(outcome, Failure):
            message = f"❌ <b>{title} FAILED</b>\n\n"
            message += f"Error class: {outcome.classification.value}\n"
            for err in outcome.last_errors:
                message += f"- {html.escape(err.endpoint.url)}: {html.escape(err.message)}\n"
            if outcome.hint:
                message += f"\n{html.escape(outcome.hint)}\n"
            if outcome.pending_tx_hash:
                message += f"\n⚠️ Broadcast but unconfirmed: <code>{outcome.pending_tx_hash}</code>\n"
                message += f"Explorer: {network.tx_url(outcome.pending_tx_hash)}\n"
            return self.send_message(message)

        message = f"✅ <b>{title} CONFIRMED</b>\n\n"
        message += f"Transaction: <code>{outcome.tx_hash}</code>\n"
        message += f"Explorer: {network.tx_url(outcome.tx_hash)}\n"
        message += f"Block: {outcome.block_number} ({outcome.confirmed_block_delta} confirmations)\n"
        if outcome.contract_address:
            message += f"Contract: <code>{outcome.contract_address}</code>\n"
        if amount_base_units is not None:
            amount = format_base_units(amount_base_units, network.token_decimals)
            message += f"Amount: {amount} {network.token_symbol}\n"
        if verification is not None:
            message += f"Verification: {verification.state.value}\n"
        return self.send_message(message)
