"""Long-polling Telegram transport, configuration and process entry point."""
