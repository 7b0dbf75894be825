"""
Tests for sticker replication between peers.
"""
import json

import pytest

from photogether.core.exceptions import OwnershipError
from photogether.services.sticker_sync_service import Frame, SharedObject, StickerSyncService, is_sticker_message


class Peer:
    def __init__(self, peer_id):
        self.outbox = []
        self.service = StickerSyncService(peer_id, self.outbox.append)
        self.remote_changes = []
        self.service.on_remote_update(lambda sticker, deleted: self.remote_changes.append((sticker, deleted)))

    def deliver_to(self, other):
        sent, self.outbox[:] = list(self.outbox), []
        for data in sent:
            assert other.service.handle_remote_message(self.service.local_peer_id, data)


def decoded(data):
    return json.loads(data)


def test_created_sticker_is_unowned_and_broadcast():
    peer = Peer("A")

    sticker = peer.service.create_sticker("heart.png", Frame(10, 20, 64, 64))

    assert sticker.owner_peer_id is None
    [message] = peer.outbox
    assert decoded(message)['action'] == 'sticker_update'
    assert SharedObject.from_dict(decoded(message)['object']) == sticker


def test_first_gesture_claims_unowned_sticker():
    a, b = Peer("A"), Peer("B")
    sticker = a.service.create_sticker("heart.png", Frame(0, 0, 64, 64))
    a.deliver_to(b)

    claimed = b.service.begin_gesture(sticker.id)
    b.deliver_to(a)

    assert claimed.owner_peer_id == "B"
    assert a.service.get_sticker(sticker.id).owner_peer_id == "B"
    with pytest.raises(OwnershipError):
        a.service.begin_gesture(sticker.id)
    with pytest.raises(OwnershipError):
        a.service.move_by(sticker.id, 5, 5)
    with pytest.raises(OwnershipError):
        a.service.delete_sticker(sticker.id)


def test_owner_moves_are_replicated():
    a, b = Peer("A"), Peer("B")
    sticker = a.service.create_sticker("star.png", Frame(0, 0, 64, 64))
    a.deliver_to(b)

    a.service.begin_gesture(sticker.id)
    a.service.move_by(sticker.id, 15, -5)
    a.service.end_gesture(sticker.id)
    a.deliver_to(b)

    assert b.service.get_sticker(sticker.id).frame == Frame(15, -5, 64, 64)
    assert b.remote_changes[-1] == (a.service.get_sticker(sticker.id), False)


def test_resize_is_clamped_and_square():
    peer = Peer("A")
    sticker = peer.service.create_sticker("star.png", Frame(5, 5, 64, 64))
    peer.service.begin_gesture(sticker.id)

    assert peer.service.resize_by(sticker.id, 500).frame == Frame(5, 5, 128, 128)
    assert peer.service.resize_by(sticker.id, -500).frame == Frame(5, 5, 48, 48)
    assert peer.service.resize_by(sticker.id, 12).frame == Frame(5, 5, 60, 60)


def test_remote_update_during_gesture_is_dropped():
    a, b = Peer("A"), Peer("B")
    sticker = a.service.create_sticker("star.png", Frame(0, 0, 64, 64))
    a.deliver_to(b)

    b.service.begin_gesture(sticker.id)
    b.service.move_by(sticker.id, 30, 30)
    stale = SharedObject(id=sticker.id, frame=Frame(1, 1, 64, 64), image_ref="star.png", owner_peer_id="A")
    b.service.handle_remote_message("A", json.dumps({'action': 'sticker_update', 'object': stale.to_dict()}).encode())

    assert b.service.get_sticker(sticker.id).frame == Frame(30, 30, 64, 64)
    assert b.service.get_sync_statistics()['dropped_during_gesture'] == 1


def test_remote_delete_waits_for_gesture_to_end():
    a, b = Peer("A"), Peer("B")
    sticker = a.service.create_sticker("star.png", Frame(0, 0, 64, 64))
    a.deliver_to(b)

    b.service.begin_gesture(sticker.id)
    a.service.delete_sticker(sticker.id)
    a.deliver_to(b)
    assert b.service.get_sticker(sticker.id) is not None

    assert b.service.end_gesture(sticker.id) is None
    assert b.service.get_sticker(sticker.id) is None
    assert b.remote_changes[-1][1] is True


def test_own_claim_echo_keeps_local_frame():
    peer = Peer("A")
    sticker = peer.service.create_sticker("star.png", Frame(0, 0, 64, 64))
    peer.service.begin_gesture(sticker.id)
    peer.service.move_by(sticker.id, 40, 0)
    peer.service.end_gesture(sticker.id)

    echo = SharedObject(id=sticker.id, frame=Frame(0, 0, 64, 64), image_ref="star.png", owner_peer_id="A")
    peer.service.handle_remote_message("B", json.dumps({'action': 'sticker_update', 'object': echo.to_dict()}).encode())

    assert peer.service.get_sticker(sticker.id).frame == Frame(40, 0, 64, 64)


def test_release_ownership_frees_sticker_for_others():
    a, b = Peer("A"), Peer("B")
    sticker = a.service.create_sticker("star.png", Frame(0, 0, 64, 64))
    a.service.begin_gesture(sticker.id)
    a.service.end_gesture(sticker.id)
    a.service.release_ownership(sticker.id)
    a.deliver_to(b)

    assert b.service.begin_gesture(sticker.id).owner_peer_id == "B"


def test_departed_peer_releases_its_stickers():
    a, b = Peer("A"), Peer("B")
    sticker = a.service.create_sticker("star.png", Frame(0, 0, 64, 64))
    a.service.begin_gesture(sticker.id)
    a.deliver_to(b)

    assert b.service.release_peer("A") == [sticker.id]
    assert b.service.get_sticker(sticker.id).owner_peer_id is None


def test_snapshot_all_covers_every_sticker():
    peer = Peer("A")
    first = peer.service.create_sticker("one.png", Frame(0, 0, 64, 64))
    second = peer.service.create_sticker("two.png", Frame(80, 0, 64, 64))

    ids = {decoded(data)['object']['id'] for data in peer.service.snapshot_all()}
    assert ids == {first.id, second.id}


def test_non_sticker_and_invalid_payloads():
    peer = Peer("A")

    assert not peer.service.handle_remote_message("B", b"\xff\xfe raw bytes")
    assert not peer.service.handle_remote_message("B", b'{"action": "chat"}')
    assert not is_sticker_message(b'{"action": "chat"}')

    bad = json.dumps({'action': 'sticker_update', 'object': {'id': 'x', 'frame': {'x': 'left'}}}).encode()
    assert peer.service.handle_remote_message("B", bad)
    assert peer.service.objects == {}
    assert peer.service.get_sync_statistics()['decode_errors'] == 1


def exchange(a, b, rounds):
    for _ in range(rounds):
        a.deliver_to(b)
        b.deliver_to(a)


def test_simultaneous_claims_converge_within_two_rounds():
    a, b = Peer("A"), Peer("B")
    sticker = a.service.create_sticker("heart.png", Frame(10, 10, 64, 64))
    a.deliver_to(b)

    # Both grab the unowned sticker before either claim arrives
    a.service.begin_gesture(sticker.id)
    b.service.begin_gesture(sticker.id)
    a.service.end_gesture(sticker.id)
    b.service.end_gesture(sticker.id)
    exchange(a, b, rounds=2)

    assert a.outbox == b.outbox == []
    assert a.service.get_sticker(sticker.id) == b.service.get_sticker(sticker.id)
    assert a.service.get_sticker(sticker.id).owner_peer_id == "A"
    assert len(a.service.objects) == len(b.service.objects) == 1
    assert a.service.get_sync_statistics()['claim_conflicts'] == 2

    # The loser is told who owns it; the winner keeps editing
    with pytest.raises(OwnershipError):
        b.service.begin_gesture(sticker.id)
    a.service.begin_gesture(sticker.id)
    a.service.move_by(sticker.id, 5, 0)
    a.service.end_gesture(sticker.id)
    exchange(a, b, rounds=1)
    assert b.service.get_sticker(sticker.id).frame == Frame(15, 10, 64, 64)


def test_claim_dropped_during_gesture_still_converges():
    a, b = Peer("A"), Peer("B")
    sticker = b.service.create_sticker("heart.png", Frame(0, 0, 64, 64))
    b.deliver_to(a)

    a.service.begin_gesture(sticker.id)
    b.service.begin_gesture(sticker.id)
    # B's claim lands while A is still dragging and is dropped there
    b.deliver_to(a)
    a.service.end_gesture(sticker.id)
    b.service.end_gesture(sticker.id)
    exchange(a, b, rounds=2)

    assert a.service.get_sticker(sticker.id) == b.service.get_sticker(sticker.id)
    assert b.service.get_sticker(sticker.id).owner_peer_id == "A"
