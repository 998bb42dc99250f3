"""
Common utilities for the sticker pack bot.

Modules:
- telegram: Telegram Bot API client with rate limiting and retries
- stickers: sticker-service boundary and its Telegram implementation
- imaging: image normalization into 512px sticker PNGs (Pillow)
- naming: display name -> Telegram sticker set name
"""

__all__ = [
    "imaging",
    "naming",
    "stickers",
    "telegram",
]
