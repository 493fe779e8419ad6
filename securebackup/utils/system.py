import socket


def get_hostname() -> str:
    """Local hostname, 'unknown' if it can't be determined."""
    try:
        return socket.gethostname() or 'unknown'
    except OSError:
        return 'unknown'
