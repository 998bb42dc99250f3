from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

from common.naming import pack_link


ADD_LABEL = "Add"
CREATE_LABEL = "Create"

HINT_TEXT = "Send me a picture or a sticker and I will put it into one of your sticker packs."


# --- Payload and states ---
@dataclass(frozen=True)
class AssetPayload:
    """The asset a flow is about: a photo/image file or an existing sticker."""

    asset_ref: str
    is_sticker: bool
    sticker_format: str = "static"


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class AwaitingChoice:
    payload: AssetPayload


@dataclass(frozen=True)
class AwaitingPackName:
    payload: AssetPayload


@dataclass(frozen=True)
class AwaitingTargetPack:
    payload: AssetPayload


ConversationState = Union[Idle, AwaitingChoice, AwaitingPackName, AwaitingTargetPack]

IDLE = Idle()


# --- Transport events ---
@dataclass(frozen=True)
class TextReceived:
    session_id: int
    owner_id: int
    text: str


@dataclass(frozen=True)
class ImageReceived:
    session_id: int
    owner_id: int
    asset_ref: str


@dataclass(frozen=True)
class StickerReceived:
    session_id: int
    owner_id: int
    asset_ref: str
    sticker_format: str = "static"


@dataclass(frozen=True)
class UnsupportedReceived:
    """Any message that is neither text nor a usable image/sticker."""

    session_id: int
    owner_id: int


# --- Completions of effects ---
@dataclass(frozen=True)
class Completion:
    session_id: int
    owner_id: int
    flow_id: int


@dataclass(frozen=True)
class PackCreated(Completion):
    generated_id: str


@dataclass(frozen=True)
class PackNameTaken(Completion):
    display_name: str
    generated_id: str
    payload: AssetPayload


@dataclass(frozen=True)
class PackCreateFailed(Completion):
    display_name: str
    reason: str


@dataclass(frozen=True)
class StickerAppended(Completion):
    generated_id: str


@dataclass(frozen=True)
class PackMissing(Completion):
    generated_id: str
    payload: AssetPayload


@dataclass(frozen=True)
class AppendFailed(Completion):
    generated_id: str
    reason: str


@dataclass(frozen=True)
class NormalizationFailed(Completion):
    reason: str


Event = Union[
    TextReceived,
    ImageReceived,
    StickerReceived,
    UnsupportedReceived,
    PackCreated,
    PackNameTaken,
    PackCreateFailed,
    StickerAppended,
    PackMissing,
    AppendFailed,
    NormalizationFailed,
]


# --- Effects ---
@dataclass(frozen=True)
class CreatePack:
    session_id: int
    owner_id: int
    flow_id: int
    display_name: str
    payload: AssetPayload


@dataclass(frozen=True)
class AppendToPack:
    session_id: int
    owner_id: int
    flow_id: int
    generated_id: str
    payload: AssetPayload


Effect = Union[CreatePack, AppendToPack]


# --- Output ---
@dataclass(frozen=True)
class Reply:
    session_id: int
    text: str
    options: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class Transition:
    state: ConversationState
    replies: Tuple[Reply, ...] = ()
    effects: Tuple[Effect, ...] = ()


def is_asset_event(event: object) -> bool:
    return isinstance(event, (ImageReceived, StickerReceived))


# --- Prompts ---
def _ask_choice(session_id: int, payload: AssetPayload, *notes: Reply) -> Transition:
    prompt = Reply(
        session_id,
        "Add it to one of your sticker packs or create a new one?",
        (ADD_LABEL, CREATE_LABEL),
    )
    return Transition(AwaitingChoice(payload), (*notes, prompt))


def _ask_name(session_id: int, payload: AssetPayload, text: str, *notes: Reply) -> Transition:
    return Transition(AwaitingPackName(payload), (*notes, Reply(session_id, text)))


def _abort(session_id: int, text: str) -> Transition:
    return Transition(IDLE, (Reply(session_id, f"{text} Send the picture again to start over."),))


def _start_flow(event: Union[ImageReceived, StickerReceived], packs: Sequence[str]) -> Transition:
    if isinstance(event, StickerReceived):
        payload = AssetPayload(event.asset_ref, True, event.sticker_format)
    else:
        payload = AssetPayload(event.asset_ref, False)
    if packs:
        return _ask_choice(event.session_id, payload)
    return _ask_name(
        event.session_id, payload, "You have no sticker packs yet. Send a name for a new pack."
    )


def _command(state: ConversationState, event: TextReceived) -> Optional[Transition]:
    cmd = event.text.strip().split(maxsplit=1)[0].lower() if event.text.strip() else ""
    if cmd in ("/start", "/help"):
        return Transition(IDLE, (Reply(event.session_id, HINT_TEXT),))
    if cmd == "/cancel":
        text = "Nothing to cancel." if isinstance(state, Idle) else "Cancelled."
        return Transition(IDLE, (Reply(event.session_id, text),))
    return None


def _on_text(state: ConversationState, event: TextReceived, packs: Sequence[str], flow_id: int) -> Transition:
    sid = event.session_id
    text = event.text.strip()

    if isinstance(state, Idle):
        return Transition(IDLE, (Reply(sid, HINT_TEXT),))

    if isinstance(state, AwaitingChoice):
        choice = text.lower()
        if choice == ADD_LABEL.lower():
            if not packs:
                return _ask_name(sid, state.payload, "You have no sticker packs yet. Send a name for a new pack.")
            return Transition(
                AwaitingTargetPack(state.payload),
                (Reply(sid, "Pick a sticker pack:", tuple(packs)),),
            )
        if choice == CREATE_LABEL.lower():
            return _ask_name(sid, state.payload, "Send a name for the new sticker pack.")
        return _abort(sid, f"Expected {ADD_LABEL} or {CREATE_LABEL}.")

    if isinstance(state, AwaitingPackName):
        if not text:
            return _abort(sid, "The pack name cannot be empty.")
        effect = CreatePack(sid, event.owner_id, flow_id, text, state.payload)
        return Transition(IDLE, (Reply(sid, f"Creating sticker pack “{text}”…"),), (effect,))

    if isinstance(state, AwaitingTargetPack):
        if text not in packs:
            return _abort(sid, f"“{text}” is not one of your sticker packs.")
        effect = AppendToPack(sid, event.owner_id, flow_id, text, state.payload)
        return Transition(IDLE, (Reply(sid, f"Adding the sticker to {text}…"),), (effect,))

    raise TypeError(f"Unknown conversation state: {state!r}")


def _on_completion(event: Completion, packs: Sequence[str]) -> Transition:
    # The first reply of every completion is the outcome notice; the engine
    # delivers only that one when the session has moved on to another flow.
    sid = event.session_id
    if isinstance(event, PackCreated):
        return Transition(IDLE, (Reply(sid, f"Here is your sticker pack: {pack_link(event.generated_id)}"),))
    if isinstance(event, PackNameTaken):
        notice = Reply(sid, f"You already have a pack called “{event.display_name}” ({event.generated_id}).")
        return _ask_name(sid, event.payload, "Send another name for the new sticker pack.", notice)
    if isinstance(event, PackCreateFailed):
        return Transition(IDLE, (Reply(sid, f"Could not create sticker pack “{event.display_name}”: {event.reason}"),))
    if isinstance(event, StickerAppended):
        return Transition(IDLE, (Reply(sid, f"Sticker added to {pack_link(event.generated_id)}"),))
    if isinstance(event, PackMissing):
        notice = Reply(sid, f"Sticker pack {event.generated_id} no longer exists, so I removed it from your list.")
        if packs:
            return _ask_choice(sid, event.payload, notice)
        return _ask_name(sid, event.payload, "Send a name for a new sticker pack.", notice)
    if isinstance(event, AppendFailed):
        return Transition(IDLE, (Reply(sid, f"Could not add the sticker to {event.generated_id}: {event.reason}"),))
    if isinstance(event, NormalizationFailed):
        return Transition(IDLE, (Reply(sid, f"Could not process the image: {event.reason}"),))
    raise TypeError(f"Unknown completion: {event!r}")


def transition(state: ConversationState, event: Event, packs: Sequence[str], *, flow_id: int = 0) -> Transition:
    """
    Pure step of the conversation state machine.

    - `packs`: the owner's registered generated ids, in insertion order.
    - `flow_id`: id of the asset flow the session is on; stamped into
      emitted effects so their completions can be matched back.

    Returns the next state, the replies to send and the effects to run.
    Long-latency work only ever appears as an effect.
    """
    if is_asset_event(event):
        return _start_flow(event, packs)

    if isinstance(event, Completion):
        return _on_completion(event, packs)

    if isinstance(event, UnsupportedReceived):
        if isinstance(state, Idle):
            return Transition(IDLE, (Reply(event.session_id, HINT_TEXT),))
        return _abort(event.session_id, "Expected a text reply.")

    if isinstance(event, TextReceived):
        return _command(state, event) or _on_text(state, event, packs, flow_id)

    raise TypeError(f"Unknown event: {event!r}")


__all__ = [
    "ADD_LABEL",
    "CREATE_LABEL",
    "HINT_TEXT",
    "IDLE",
    "AppendFailed",
    "AppendToPack",
    "AssetPayload",
    "AwaitingChoice",
    "AwaitingPackName",
    "AwaitingTargetPack",
    "Completion",
    "ConversationState",
    "CreatePack",
    "Effect",
    "Event",
    "Idle",
    "ImageReceived",
    "NormalizationFailed",
    "PackCreateFailed",
    "PackCreated",
    "PackMissing",
    "PackNameTaken",
    "Reply",
    "StickerAppended",
    "StickerReceived",
    "TextReceived",
    "Transition",
    "UnsupportedReceived",
    "is_asset_event",
    "transition",
]
