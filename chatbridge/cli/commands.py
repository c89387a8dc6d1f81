"""bridgectl command implementations. Each returns a process exit code."""

import sys

from .client import BridgeClient

UNAVAILABLE_MESSAGE = "Error: bridge unavailable (is it running?)"


def _unavailable() -> int:
    print(UNAVAILABLE_MESSAGE, file=sys.stderr)
    return 2


def _api_error(data) -> int:
    detail = data.get("detail") if isinstance(data, dict) else None
    print(f"Error: {detail or 'request failed'}", file=sys.stderr)
    return 1


def cmd_status(client: BridgeClient) -> int:
    """
    Show monitoring status.

    Exit codes:
        0: Success
        1: API error
        2: Bridge unavailable
    """
    data, success, unavailable = client.status()
    if unavailable:
        return _unavailable()
    if not success:
        return _api_error(data)

    monitor = data["monitor"]
    state = "paused" if monitor["is_paused"] else monitor["phase"]
    print(f"Session:   {data['session'] or '(none)'}")
    print(f"Chat:      {'connected' if data['chat_connected'] else 'disconnected'}")
    print(f"State:     {monitor['current_state']}")
    print(f"Monitor:   {state}, every {monitor['poll_interval']:.1f}s")
    print(f"Watch:     {'on' if monitor['watching'] else 'off'}")
    print(f"Samples:   {monitor['samples_taken']} (last {monitor['last_sample_at'] or 'never'})")
    processes = data["processes"]
    print(f"Processes: {processes['active']} active, {processes['spawned']} spawned, {processes['timed_out']} timed out")
    return 0


def cmd_sessions(client: BridgeClient) -> int:
    """List tmux sessions known to the bridge."""
    data, success, unavailable = client.list_sessions()
    if unavailable:
        return _unavailable()
    if not success:
        return _api_error(data)

    sessions = data.get("sessions", [])
    if not sessions:
        print("No sessions")
        return 0
    for session in sessions:
        marker = "*" if session["current"] else " "
        print(f"{marker} {session['name']}")
    return 0


def cmd_dedupstats(client: BridgeClient) -> int:
    """Show idempotency cache statistics."""
    data, success, unavailable = client.dedup_stats()
    if unavailable:
        return _unavailable()
    if not success:
        return _api_error(data)

    for name in ("inbound", "outbound"):
        stats = data[name]
        print(
            f"{name}: {stats['size']}/{stats['max_size']} keys, ttl {stats['ttl_seconds']}s, "
            f"hits {stats['hits']}, misses {stats['misses']}, evicted {stats['evictions']}"
        )
    notifications = data["notifications"]
    print(f"duplicates dropped: {data['duplicates_dropped']}")
    print(
        f"notifications: {notifications['sent']} sent, {notifications['suppressed']} suppressed, "
        f"{notifications['failed']} failed"
    )
    return 0


def cmd_send(client: BridgeClient, text: str) -> int:
    """Send text to the active session through the router."""
    data, success, unavailable = client.send_input(text)
    if unavailable:
        return _unavailable()
    if not success:
        return _api_error(data)

    for reply in data.get("replies", []):
        print(reply)
    return 0
