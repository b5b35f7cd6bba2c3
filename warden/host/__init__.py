from typing import Protocol


class ProcessHost(Protocol):
    """Whatever owns the supervised CLI processes.

    Output arrives the other way, through ``Supervisor.on_output`` and
    ``Supervisor.on_process_exit``.
    """

    async def send_text(self, session_id: str, text: str) -> None: ...

    async def get_recent_buffer(self, session_id: str, max_bytes: int) -> str: ...
