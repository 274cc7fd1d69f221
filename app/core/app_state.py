from app.channels.gateway import RealtimeGateway


class AppState:
    """Process-wide singletons shared by the socket endpoint and the sweeper."""

    def __init__(self) -> None:
        self.gateway = RealtimeGateway()
        self.rate_limit_client = None


state = AppState()
