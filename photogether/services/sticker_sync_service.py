"""
Sticker sync service for PhotoGether.
Replicates shared overlay objects between peers as whole-object snapshots
over the data channel.
"""

import datetime
import json
import uuid
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Set

from photogether.core.exceptions import DecodingError, OwnershipError
from photogether.core.logging import LoggerMixin, debug_log
from photogether.core.validation_utils import ValidationUtils

STICKER_UPDATE = 'sticker_update'
STICKER_DELETE = 'sticker_delete'
STICKER_ACTIONS = (STICKER_UPDATE, STICKER_DELETE)

MIN_STICKER_SIZE = 48.0
MAX_STICKER_SIZE = 128.0

_NUMBER = (int, float)


@dataclass(frozen=True)
class Frame:
    x: float
    y: float
    width: float
    height: float

    def moved_by(self, dx: float, dy: float) -> "Frame":
        return replace(self, x=self.x + dx, y=self.y + dy)

    def resized_by(self, delta: float) -> "Frame":
        """Grow or shrink as a square, clamped to the sticker size range."""
        side = min(MAX_STICKER_SIZE, max(self.width + delta, MIN_STICKER_SIZE))
        return replace(self, width=side, height=side)

    def to_dict(self) -> Dict[str, float]:
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}

    @classmethod
    def from_dict(cls, data: Any) -> "Frame":
        if not isinstance(data, dict):
            raise DecodingError("Sticker frame must be an object")
        error = (ValidationUtils.validate_required_fields(data, ['x', 'y', 'width', 'height'])
                 or ValidationUtils.validate_field_types(data, {
                     'x': _NUMBER, 'y': _NUMBER, 'width': _NUMBER, 'height': _NUMBER
                 }))
        if error:
            raise DecodingError(error, {"frame": data})
        return cls(x=data['x'], y=data['y'], width=data['width'], height=data['height'])


@dataclass(frozen=True)
class SharedObject:
    """A sticker as replicated between peers; owner_peer_id None means unowned."""
    id: str
    frame: Frame
    image_ref: str
    owner_peer_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'frame': self.frame.to_dict(),
            'imageRef': self.image_ref,
            'ownerPeerID': self.owner_peer_id
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SharedObject":
        if not isinstance(data, dict):
            raise DecodingError("Sticker snapshot must be an object")
        error = (ValidationUtils.validate_required_fields(data, ['id', 'frame', 'imageRef'])
                 or ValidationUtils.validate_field_types(data, {
                     'id': str, 'imageRef': str, 'ownerPeerID': str
                 }))
        if error:
            raise DecodingError(error, {"sticker": data})
        return cls(
            id=data['id'],
            frame=Frame.from_dict(data['frame']),
            image_ref=data['imageRef'],
            owner_peer_id=data.get('ownerPeerID')
        )


RemoteUpdateHandler = Callable[[SharedObject, bool], None]


def is_sticker_message(data: bytes) -> bool:
    """Cheap check used to route data channel payloads."""
    try:
        message = json.loads(data)
    except (ValueError, UnicodeDecodeError):
        return False
    return isinstance(message, dict) and message.get('action') in STICKER_ACTIONS


class StickerSyncService(LoggerMixin):
    """Local view of the shared stickers and the rules for changing it.

    Every local change broadcasts the full object. Remote snapshots win
    unless the object is under an active local gesture, in which case they
    are dropped (deletes are deferred until the gesture ends). When a remote
    claim collides with a local one, the lower peer ID keeps the sticker and
    re-broadcasts it so the other side yields.
    """

    def __init__(self, local_peer_id: str, send: Callable[[bytes], Any]):
        super().__init__()
        self.local_peer_id = local_peer_id
        self.send = send

        self.objects: Dict[str, SharedObject] = {}
        self.active_gestures: Set[str] = set()
        self.deferred_deletes: Set[str] = set()
        self.update_handlers: List[RemoteUpdateHandler] = []

        self.sync_stats = {
            'local_operations': 0,
            'remote_operations': 0,
            'operations_by_type': defaultdict(int),
            'dropped_during_gesture': 0,
            'claim_conflicts': 0,
            'decode_errors': 0,
            'start_time': datetime.datetime.now()
        }

        debug_log(f"🎨 [StickerSync] Sticker sync service initialized", {"local_peer_id": local_peer_id})

    # ------------------------------------------------------------------
    # Local operations
    # ------------------------------------------------------------------

    def create_sticker(self, image_ref: str, frame: Frame, sticker_id: Optional[str] = None) -> SharedObject:
        """Place a new, unowned sticker and replicate it."""
        sticker = SharedObject(id=sticker_id or str(uuid.uuid4()), frame=frame, image_ref=image_ref)
        self.objects[sticker.id] = sticker
        self._count_local('create')

        debug_log(f"✅ [StickerSync] Sticker created", {
            "sticker_id": sticker.id,
            "image_ref": image_ref
        })
        self.broadcast_update(sticker)
        return sticker

    def begin_gesture(self, sticker_id: str) -> SharedObject:
        """Start a drag or resize; claims the sticker if it is unowned."""
        sticker = self._get(sticker_id)
        if sticker.owner_peer_id not in (None, self.local_peer_id):
            raise OwnershipError("Sticker is owned by another peer", {
                "sticker_id": sticker_id,
                "owner": sticker.owner_peer_id
            })

        self.active_gestures.add(sticker_id)
        if sticker.owner_peer_id is None:
            sticker = replace(sticker, owner_peer_id=self.local_peer_id)
            self.objects[sticker_id] = sticker
            self._count_local('claim')
            debug_log(f"✋ [StickerSync] Sticker claimed", {"sticker_id": sticker_id})
            self.broadcast_update(sticker)
        return sticker

    def update_frame(self, sticker_id: str, frame: Frame) -> SharedObject:
        """Set a new frame on a locally owned sticker and replicate it."""
        sticker = self._get_owned(sticker_id)
        if sticker.frame == frame:
            return sticker
        sticker = replace(sticker, frame=frame)
        self.objects[sticker_id] = sticker
        self._count_local('frame')
        self.broadcast_update(sticker)
        return sticker

    def move_by(self, sticker_id: str, dx: float, dy: float) -> SharedObject:
        return self.update_frame(sticker_id, self._get_owned(sticker_id).frame.moved_by(dx, dy))

    def resize_by(self, sticker_id: str, delta: float) -> SharedObject:
        return self.update_frame(sticker_id, self._get_owned(sticker_id).frame.resized_by(delta))

    def end_gesture(self, sticker_id: str) -> Optional[SharedObject]:
        """Finish a gesture; applies a remote delete that arrived meanwhile."""
        self.active_gestures.discard(sticker_id)

        if sticker_id in self.deferred_deletes:
            self.deferred_deletes.discard(sticker_id)
            sticker = self.objects.pop(sticker_id, None)
            if sticker is not None:
                debug_log(f"🗑️ [StickerSync] Applying deferred delete", {"sticker_id": sticker_id})
                self._notify_handlers(sticker, True)
            return None

        sticker = self.objects.get(sticker_id)
        if sticker is not None and sticker.owner_peer_id == self.local_peer_id:
            self.broadcast_update(sticker)
        return sticker

    def delete_sticker(self, sticker_id: str):
        """Remove a sticker everywhere. Only its owner, or anyone when unowned, may do so."""
        sticker = self._get(sticker_id)
        if sticker.owner_peer_id not in (None, self.local_peer_id):
            raise OwnershipError("Sticker is owned by another peer", {
                "sticker_id": sticker_id,
                "owner": sticker.owner_peer_id
            })

        del self.objects[sticker_id]
        self.active_gestures.discard(sticker_id)
        self.deferred_deletes.discard(sticker_id)
        self._count_local('delete')

        debug_log(f"✅ [StickerSync] Sticker deleted", {"sticker_id": sticker_id})
        self._send({'action': STICKER_DELETE, 'id': sticker_id})

    def release_ownership(self, sticker_id: str) -> SharedObject:
        """Give up a locally owned sticker so other peers may grab it."""
        sticker = self._get_owned(sticker_id)
        self.active_gestures.discard(sticker_id)
        sticker = replace(sticker, owner_peer_id=None)
        self.objects[sticker_id] = sticker
        self._count_local('release')
        self.broadcast_update(sticker)
        return sticker

    def broadcast_update(self, sticker: SharedObject):
        """Send the whole object to every peer."""
        self._send(self._update_message(sticker))

    def snapshot_all(self) -> List[bytes]:
        """Encoded snapshots of the full local view, for resyncing a new peer."""
        return [self._encode(self._update_message(sticker)) for sticker in self.objects.values()]

    def resync(self):
        """Re-broadcast the full local view."""
        for sticker in list(self.objects.values()):
            self.broadcast_update(sticker)

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    def on_remote_update(self, handler: RemoteUpdateHandler):
        """Register handler(sticker, deleted) for changes made by other peers."""
        self.update_handlers.append(handler)

    def handle_remote_message(self, peer_id: str, data: bytes) -> bool:
        """Apply a sticker message from a peer. Returns False for non-sticker payloads."""
        try:
            message = json.loads(data)
        except (ValueError, UnicodeDecodeError):
            return False
        if not isinstance(message, dict) or message.get('action') not in STICKER_ACTIONS:
            return False

        try:
            if message['action'] == STICKER_UPDATE:
                self._apply_remote_update(peer_id, SharedObject.from_dict(message.get('object')))
            else:
                sticker_id = message.get('id')
                if not isinstance(sticker_id, str):
                    raise DecodingError("Sticker delete without id", {"message": message})
                self._apply_remote_delete(peer_id, sticker_id)
        except DecodingError as e:
            self.sync_stats['decode_errors'] += 1
            self.log_error(f"Invalid sticker message", {
                "peer_id": peer_id,
                "error": str(e)
            })
        return True

    def _apply_remote_update(self, peer_id: str, incoming: SharedObject):
        self._count_remote('update')

        if incoming.id in self.active_gestures:
            self.sync_stats['dropped_during_gesture'] += 1
            self.log_debug(f"Remote update dropped during local gesture", {
                "sticker_id": incoming.id,
                "peer_id": peer_id
            })
            return

        local = self.objects.get(incoming.id)
        if local is not None and local.owner_peer_id == self.local_peer_id:
            if incoming.owner_peer_id == self.local_peer_id:
                # Our own claim echoed back; the local frame is newer
                return
            if incoming.owner_peer_id is not None and self.local_peer_id < incoming.owner_peer_id:
                # Concurrent claim: the lower peer ID keeps the sticker
                self.sync_stats['claim_conflicts'] += 1
                self.log_info(f"Kept sticker against a concurrent claim", {
                    "sticker_id": incoming.id,
                    "rival": incoming.owner_peer_id
                })
                self.broadcast_update(local)
                return

        self.objects[incoming.id] = incoming
        self._notify_handlers(incoming, False)

    def _apply_remote_delete(self, peer_id: str, sticker_id: str):
        self._count_remote('delete')

        if sticker_id in self.active_gestures:
            self.deferred_deletes.add(sticker_id)
            self.log_debug(f"Remote delete deferred until gesture ends", {
                "sticker_id": sticker_id,
                "peer_id": peer_id
            })
            return

        sticker = self.objects.pop(sticker_id, None)
        if sticker is not None:
            self._notify_handlers(sticker, True)

    def release_peer(self, peer_id: str) -> List[str]:
        """Stickers owned by a departed peer become unowned locally."""
        released = []
        for sticker_id, sticker in list(self.objects.items()):
            if sticker.owner_peer_id == peer_id:
                self.objects[sticker_id] = replace(sticker, owner_peer_id=None)
                released.append(sticker_id)
                self._notify_handlers(self.objects[sticker_id], False)

        if released:
            debug_log(f"🔓 [StickerSync] Released stickers of departed peer", {
                "peer_id": peer_id,
                "sticker_ids": released
            })
        return released

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, sticker_id: str) -> SharedObject:
        sticker = self.objects.get(sticker_id)
        if sticker is None:
            raise KeyError(sticker_id)
        return sticker

    def _get_owned(self, sticker_id: str) -> SharedObject:
        sticker = self._get(sticker_id)
        if sticker.owner_peer_id != self.local_peer_id:
            raise OwnershipError("Sticker is not owned by the local peer", {
                "sticker_id": sticker_id,
                "owner": sticker.owner_peer_id
            })
        return sticker

    @staticmethod
    def _update_message(sticker: SharedObject) -> Dict[str, Any]:
        return {'action': STICKER_UPDATE, 'object': sticker.to_dict()}

    @staticmethod
    def _encode(message: Dict[str, Any]) -> bytes:
        return json.dumps(message).encode('utf-8')

    def _send(self, message: Dict[str, Any]):
        self.send(self._encode(message))

    def _notify_handlers(self, sticker: SharedObject, deleted: bool):
        for handler in list(self.update_handlers):
            try:
                handler(sticker, deleted)
            except Exception as e:
                self.log_error(f"Error in sticker update handler", {
                    "sticker_id": sticker.id,
                    "error": str(e),
                    "error_type": type(e).__name__
                })

    def _count_local(self, operation: str):
        self.sync_stats['local_operations'] += 1
        self.sync_stats['operations_by_type'][operation] += 1

    def _count_remote(self, operation: str):
        self.sync_stats['remote_operations'] += 1
        self.sync_stats['operations_by_type'][f"remote_{operation}"] += 1

    def get_sticker(self, sticker_id: str) -> Optional[SharedObject]:
        return self.objects.get(sticker_id)

    def get_sync_statistics(self) -> Dict[str, Any]:
        """Get sticker sync statistics."""
        uptime = datetime.datetime.now() - self.sync_stats['start_time']

        return {
            'total_stickers': len(self.objects),
            'active_gestures': len(self.active_gestures),
            'local_operations': self.sync_stats['local_operations'],
            'remote_operations': self.sync_stats['remote_operations'],
            'operations_by_type': dict(self.sync_stats['operations_by_type']),
            'dropped_during_gesture': self.sync_stats['dropped_during_gesture'],
            'claim_conflicts': self.sync_stats['claim_conflicts'],
            'decode_errors': self.sync_stats['decode_errors'],
            'uptime_seconds': uptime.total_seconds()
        }
