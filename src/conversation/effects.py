from __future__ import annotations

import logging
from typing import Callable

from common.imaging import NormalizationError, normalize_image
from common.stickers import StickerAsset, StickerService, StickerServiceError, StickerSetInvalidError
from state.registry import PackNameConflictError, PackRegistry

from .states import (
    AppendFailed,
    AppendToPack,
    AssetPayload,
    Completion,
    CreatePack,
    Effect,
    NormalizationFailed,
    PackCreateFailed,
    PackCreated,
    PackMissing,
    PackNameTaken,
    StickerAppended,
)


logger = logging.getLogger(__name__)


class EffectRunner:
    """
    Executes the long-latency work the conversation emits.

    Runs on a worker thread without any session lock held. Every outcome,
    including registry rollback and repair, is settled here before a
    Completion goes back to the engine, so the registry stays consistent even
    if the session has moved on.
    """

    def __init__(
        self,
        registry: PackRegistry,
        service: StickerService,
        *,
        normalize: Callable[[bytes], bytes] = normalize_image,
    ) -> None:
        self._registry = registry
        self._service = service
        self._normalize = normalize

    def run(self, effect: Effect) -> Completion:
        if isinstance(effect, CreatePack):
            return self._create(effect)
        if isinstance(effect, AppendToPack):
            return self._append(effect)
        raise TypeError(f"Unknown effect: {effect!r}")

    def failure_for(self, effect: Effect, reason: str) -> Completion:
        """Completion reported when `run` itself blew up."""
        if isinstance(effect, CreatePack):
            return PackCreateFailed(effect.session_id, effect.owner_id, effect.flow_id, effect.display_name, reason)
        return AppendFailed(effect.session_id, effect.owner_id, effect.flow_id, effect.generated_id, reason)

    def _prepare(self, owner_id: int, payload: AssetPayload) -> StickerAsset:
        """Stickers are reused verbatim; images are downloaded, normalized and uploaded."""
        if payload.is_sticker:
            return StickerAsset(payload.asset_ref, payload.sticker_format)
        png = self._normalize(self._service.fetch_asset(payload.asset_ref))
        return StickerAsset(self._service.upload_asset(owner_id, png), "static")

    def _create(self, eff: CreatePack) -> Completion:
        head = (eff.session_id, eff.owner_id, eff.flow_id)
        try:
            generated_id, _ = self._registry.register_if_absent(eff.owner_id, eff.display_name)
        except PackNameConflictError as e:
            return PackNameTaken(*head, eff.display_name, e.generated_id, eff.payload)

        try:
            asset = self._prepare(eff.owner_id, eff.payload)
            self._service.create_pack(eff.owner_id, generated_id, eff.display_name, [asset])
        except NormalizationError as e:
            self._rollback(eff.owner_id, generated_id)
            return NormalizationFailed(*head, str(e))
        except StickerServiceError as e:
            logger.warning("Creating pack %s failed: %s", generated_id, e)
            self._rollback(eff.owner_id, generated_id)
            return PackCreateFailed(*head, eff.display_name, str(e))
        except Exception:
            self._rollback(eff.owner_id, generated_id)
            raise
        return PackCreated(*head, generated_id)

    def _append(self, eff: AppendToPack) -> Completion:
        head = (eff.session_id, eff.owner_id, eff.flow_id)
        try:
            asset = self._prepare(eff.owner_id, eff.payload)
            self._service.append_to_pack(eff.owner_id, eff.generated_id, asset)
        except NormalizationError as e:
            return NormalizationFailed(*head, str(e))
        except StickerSetInvalidError:
            logger.warning("Pack %s of owner %s is gone; repairing registry", eff.generated_id, eff.owner_id)
            self._registry.forget(eff.owner_id, eff.generated_id)
            return PackMissing(*head, eff.generated_id, eff.payload)
        except StickerServiceError as e:
            logger.warning("Appending to pack %s failed: %s", eff.generated_id, e)
            return AppendFailed(*head, eff.generated_id, str(e))
        return StickerAppended(*head, eff.generated_id)

    def _rollback(self, owner_id: int, generated_id: str) -> None:
        logger.warning("Rolling back registration of pack %s for owner %s", generated_id, owner_id)
        self._registry.forget(owner_id, generated_id)


__all__ = ["EffectRunner"]
