"""Entry point for joining a room from the terminal.

Lines typed on stdin are sent as chat. A few slash commands control the
session:

    /who                 list the other participants
    /share SOURCE [FMT]  send SOURCE (file or capture device) instead of the camera
    /unshare             go back to the camera
    /mute [KIND]         stop sending audio (default) or video
    /unmute [KIND]       resume sending audio (default) or video
    /links               show the state of every peer link
    /help                show this list
    /quit                leave the room
"""

import asyncio
import logging
import sys

from aiortc.contrib.media import MediaPlayer

from roomlink.client.room_client import RoomClient, RoomClientError
from roomlink.config import get_config


def _print_help():
    print(__doc__.split("\n\n", 1)[1])


async def _interactive_session(client: RoomClient, room_code: str, role=None):
    await client.connect()
    players = []

    try:
        joined = await client.join(room_code, role=role)
        print(
            f"Joined room {client.room_id} as {client.display_name} ({client.role}); "
            f"{len(joined.get('members', []))} other participant(s)"
        )

        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue

            if line in ("/quit", "/leave", "/exit"):
                break
            elif line == "/help":
                _print_help()
            elif line == "/who":
                for session_id, name in client.participants.items():
                    print(f"  {name} ({session_id})")
            elif line == "/links":
                for remote_id, link in client.coordinator.links.items():
                    print(f"  {client.participants.get(remote_id, remote_id)}: {link.state.value}")
            elif line.startswith("/share "):
                parts = line.split()
                source = parts[1]
                fmt = parts[2] if len(parts) > 2 else None
                player = MediaPlayer(source, format=fmt)
                players.append(player)
                if player.video is None:
                    print(f"No video in {source}")
                    continue
                client.start_screen_share(player.video)
            elif line == "/unshare":
                client.stop_screen_share()
            elif line.split()[0] in ("/mute", "/unmute"):
                parts = line.split()
                kind = parts[1] if len(parts) > 1 else "audio"
                enabled = parts[0] == "/unmute"
                if kind == "audio":
                    client.set_audio_enabled(enabled)
                elif kind == "video":
                    client.set_video_enabled(enabled)
                else:
                    print(f"Unknown media kind: {kind}")
            else:
                await client.send_chat(line)

    finally:
        await client.close()
        for player in players:
            if player.video is not None:
                player.video.stop()


def run_room_client(
    room_code,
    server=None,
    name=None,
    role=None,
    video=None,
    audio=None,
):
    """Create a RoomClient, join ``room_code`` and chat from stdin.

    Args:
        room_code: Room code to join (case-insensitive).
        server: Signaling server URL. CLI option overrides config.
        name: Display name. CLI option overrides config.
        role: Optional "host" or "guest".
        video: Optional video source for MediaPlayer (file or device).
        audio: Optional audio source for MediaPlayer.
    """
    config = get_config()

    tracks = {}
    if video:
        tracks["video"] = MediaPlayer(video).video
    if audio:
        tracks["audio"] = MediaPlayer(audio).audio
    tracks = {kind: track for kind, track in tracks.items() if track is not None}

    client = RoomClient(
        url=server or config.signaling_websocket,
        display_name=name or config.display_name,
        local_tracks=tracks,
        ice_servers=config.ice_servers,
    )
    client.on_chat = lambda message: print(f"[{message.display_name}] {message.text}")
    client.on_presence = lambda kind, session_id, display_name: print(
        f"* {display_name} {'joined' if kind == 'presence-joined' else 'left'}"
    )
    client.on_error = lambda code, text: print(f"! {code}: {text}")
    client.on_link_state = lambda remote_id, state: logging.info(
        f"Link to {client.participants.get(remote_id, remote_id)}: {state.value}"
    )

    try:
        asyncio.run(_interactive_session(client, room_code, role=role))
    except RoomClientError as e:
        logging.error(f"Could not join room: {e}")
        raise
    except KeyboardInterrupt:
        logging.info("Client interrupted by user. Leaving room...")
    finally:
        logging.info("Client exiting...")
