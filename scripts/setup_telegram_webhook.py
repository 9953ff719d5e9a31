#!/usr/bin/env python3
"""Register the Anirum Telegram webhook.

Points the bot's updates at ``{PUBLIC_URL}/api/telegram-webhook``
(dropping pending updates) and prints what Telegram reports back.
Bot token and webhook secret come from the usual settings
(``TELEGRAM_BOT_TOKEN``, ``TELEGRAM_WEBHOOK_SECRET``, ``.env``).

Usage:
    PUBLIC_URL=https://api.anirum.example python scripts/setup_telegram_webhook.py
"""

import asyncio
import os
import sys

from anirum_api.config import settings
from anirum_api.services.telegram_bot import TelegramBotError, TelegramGateway

PUBLIC_URL = os.environ.get("PUBLIC_URL", "http://localhost:8000")
WEBHOOK_PATH = "/api/telegram-webhook"


async def setup_webhook() -> int:
    if not settings.telegram_bot_token:
        print("[FAIL] TELEGRAM_BOT_TOKEN is not set", file=sys.stderr)
        return 1

    gateway = TelegramGateway(bot_username="")
    webhook_url = PUBLIC_URL.rstrip("/") + WEBHOOK_PATH
    print(f"Registering webhook: {webhook_url}")

    try:
        await gateway.set_webhook(webhook_url, settings.telegram_webhook_secret or None)
        info = await gateway.get_webhook_info()
        bot_username = await gateway.get_bot_info()
    except TelegramBotError as e:
        print(f"[FAIL] {e}", file=sys.stderr)
        return 1

    print("[OK] Webhook registered")
    print("\nWebhook info:")
    print(f"  URL:              {info.get('url')}")
    print(f"  Pending updates:  {info.get('pending_update_count', 0)}")
    print(f"  Last error:       {info.get('last_error_message') or 'none'}")
    print(f"  Max connections:  {info.get('max_connections')}")
    print(f"\nBot: @{bot_username}")
    print(f"Deep link: {await gateway.deep_link()}")
    return 0


def main() -> int:
    return asyncio.run(setup_webhook())


if __name__ == "__main__":
    sys.exit(main())
