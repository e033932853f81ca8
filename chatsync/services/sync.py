# chatsync/services/sync.py
"""
Reconciliación pura de la ventana de mensajes.

Ninguna función de este módulo hace I/O: reciben la lista publicada anterior y
lo nuevo que llegó (snapshot en vivo, página vieja o mensaje local) y devuelven
la lista combinada más la lista de efectos a ejecutar.
"""
from dataclasses import dataclass, field
from typing import AbstractSet, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from chatsync.schemas.messages import DeliveryState, Message


@dataclass(frozen=True)
class MergeResult:
    messages: Tuple[Message, ...]
    oldest_sent_at: Optional[int]
    new_inbound: Tuple[Message, ...] = ()
    to_promote: Tuple[str, ...] = ()
    observed: Dict[str, DeliveryState] = field(default_factory=dict)
    promoted: FrozenSet[str] = frozenset()


def _sorted(messages: Iterable[Message]) -> Tuple[Message, ...]:
    # sorted() es estable: los empates conservan el orden de inserción
    return tuple(sorted(messages, key=lambda m: m.sent_at))


def _oldest(messages: Sequence[Message]) -> Optional[int]:
    return min((m.sent_at for m in messages), default=None)


def _unique(messages: Iterable[Message]) -> List[Message]:
    """Colapsa ids repetidos: gana la última copia, en la posición de la primera."""
    by_id: Dict[str, Message] = {}
    for m in messages:
        by_id[m.id] = m
    return list(by_id.values())


def merge_snapshot(
    previous: Sequence[Message],
    snapshot: Sequence[Message],
    local_user_id: str,
    observed: Optional[Dict[str, DeliveryState]] = None,
    first_snapshot: Optional[bool] = None,
    promoted: Optional[AbstractSet[str]] = None,
) -> MergeResult:
    """
    Combina la ventana reciente recién llegada con la ventana en memoria.

    - Lo que ya estaba y no viene en el snapshot se conserva (historial paginado).
    - Lo que viene en el snapshot reemplaza a la copia anterior con el mismo id.
    - El estado de entrega nunca baja respecto del máximo ya observado en la sesión.
    - `to_promote`: entrantes en `delivered` de toda la ventana combinada (también
      las paginadas) cuyo id no está en `promoted`. El resultado trae `promoted`
      ya ampliado, así un snapshot repetido no vuelve a escribir.
    - `new_inbound`: ids nuevos enviados por el otro participante (vacío en el
      primer snapshot, abrir la conversación no notifica).
    """
    if first_snapshot is None:
        first_snapshot = not previous
    seen_states = dict(observed or {})

    fresh: List[Message] = []
    for msg in _unique(snapshot):
        state = DeliveryState.max_of(msg.delivery_state, seen_states.get(msg.id))
        if state != msg.delivery_state:
            msg = msg.model_copy(update={"delivery_state": state})
        seen_states[msg.id] = state
        fresh.append(msg)

    fresh_ids = {m.id for m in fresh}
    older_kept = [m for m in previous if m.id not in fresh_ids]
    combined = _sorted(older_kept + fresh)

    prev_by_id = {m.id: m for m in previous}

    new_inbound: List[Message] = []
    if not first_snapshot:
        new_inbound = [
            m for m in fresh
            if m.id not in prev_by_id and m.sender_id != local_user_id
        ]

    already = set(promoted or ())
    to_promote = [
        m.id for m in combined
        if m.receiver_id == local_user_id
        and m.delivery_state == DeliveryState.DELIVERED
        and m.id not in already
    ]

    return MergeResult(
        messages=combined,
        oldest_sent_at=_oldest(combined),
        new_inbound=tuple(new_inbound),
        to_promote=tuple(to_promote),
        observed=seen_states,
        promoted=frozenset(already.union(to_promote)),
    )


def merge_older(current: Sequence[Message], older: Sequence[Message]) -> MergeResult:
    """Une una página de mensajes viejos con la ventana; la copia en vivo gana."""
    current_ids = {m.id for m in current}
    missing = [m for m in _unique(older) if m.id not in current_ids]
    combined = _sorted(missing + list(current))
    return MergeResult(messages=combined, oldest_sent_at=_oldest(combined))


def merge_local(current: Sequence[Message], message: Message) -> Tuple[Message, ...]:
    """Inserción optimista de un mensaje saliente."""
    kept = [m for m in current if m.id != message.id]
    return _sorted(kept + [message])


def without(current: Sequence[Message], message_id: str) -> Tuple[Message, ...]:
    return tuple(m for m in current if m.id != message_id)
