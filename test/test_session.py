"""
End-to-end tests for the client session over an in-memory relay and network.
"""
import asyncio

from fakes import FakeNetwork, FakeRelayTransport, make_config, settle
from photogether.relay.server import RelayServer
from photogether.services.sticker_sync_service import Frame
from photogether.session import PhotoGetherSession
from photogether.webrtc.media_engine import ConnectionStateChanged
from photogether.webrtc.peer_session import NegotiationState


async def started_session(relay, network, config):
    session = PhotoGetherSession(
        config,
        transport=FakeRelayTransport(relay),
        engine_factory=network.factory(lambda: session.local_peer_id)
    )
    await session.start()
    return session


async def settle_sessions(*sessions):
    await settle(*(session.orchestrator for session in sessions))


def test_joining_peer_receives_existing_stickers_and_app_data():
    async def scenario():
        config = make_config()
        relay = RelayServer(config)
        network = FakeNetwork()

        host = await started_session(relay, network, config)
        guest = await started_session(relay, network, config)

        identity = await host.create_room()
        sticker = host.stickers.create_sticker("heart.png", Frame(20, 20, 64, 64))

        await guest.join_room(identity.room_id)
        await settle_sessions(host, guest)

        assert guest.orchestrator.get_state(identity.host_user_id) is NegotiationState.OPEN
        assert guest.stickers.get_sticker(sticker.id) == sticker

        app_data = []
        host.add_data_listener(lambda peer_id, data: app_data.append((peer_id, data)))
        guest.stickers.begin_gesture(sticker.id)
        guest.stickers.move_by(sticker.id, 10, 0)
        guest.stickers.end_gesture(sticker.id)
        assert guest.broadcast_data(b"ping") == 1
        await settle_sessions(host, guest)

        assert host.stickers.get_sticker(sticker.id).frame == Frame(30, 20, 64, 64)
        assert host.stickers.get_sticker(sticker.id).owner_peer_id == guest.local_peer_id
        # Sticker traffic never reaches application listeners
        assert app_data == [(guest.local_peer_id, b"ping")]

        status = host.get_status()
        assert status['room_id'] == identity.room_id
        assert status['stickers']['total_stickers'] == 1

        await guest.close()
        await host.close()

    asyncio.run(scenario())


def test_departed_peer_gives_up_its_stickers():
    async def scenario():
        config = make_config()
        relay = RelayServer(config)
        network = FakeNetwork()

        host = await started_session(relay, network, config)
        guest = await started_session(relay, network, config)

        identity = await host.create_room()
        guest_id, _ = await guest.join_room(identity.room_id)
        await settle_sessions(host, guest)

        sticker = guest.stickers.create_sticker("star.png", Frame(0, 0, 64, 64))
        guest.stickers.begin_gesture(sticker.id)
        await settle_sessions(host, guest)
        assert host.stickers.get_sticker(sticker.id).owner_peer_id == guest_id

        closed = []
        host.add_peer_listener('peer_closed', closed.append)
        network.engines[(identity.host_user_id, guest_id)].emit(
            ConnectionStateChanged(peer_id=guest_id, state="closed")
        )
        await settle_sessions(host)

        assert closed == [guest_id]
        assert host.stickers.get_sticker(sticker.id).owner_peer_id is None
        assert host.stickers.begin_gesture(sticker.id).owner_peer_id == identity.host_user_id

        await guest.close()
        await host.close()

    asyncio.run(scenario())
