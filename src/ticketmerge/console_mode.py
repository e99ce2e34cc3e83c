from __future__ import annotations

from queue import SimpleQueue
import sys
from threading import Thread

from ticketmerge.config import AppConfig
from ticketmerge.service_runner import ServiceSignal, build_service
from ticketmerge.status_tui import run_status_tui


def run_console_mode(*, config: AppConfig, refresh_seconds: int = 2) -> None:
    if not _is_interactive_terminal():
        raise RuntimeError(
            "Console mode requires an interactive terminal. Use `ticketmerge run` instead."
        )

    service_signals: SimpleQueue[ServiceSignal] = SimpleQueue()
    service_errors: list[BaseException] = []
    controller = build_service(config, signal_sink=service_signals.put)

    def run_service_thread() -> None:
        try:
            controller.run(once=False)
        except BaseException as exc:  # noqa: BLE001
            service_errors.append(exc)
            controller.stop()

    service_thread = Thread(target=run_service_thread, name="ticketmerge-service", daemon=True)
    service_thread.start()

    tui_error: BaseException | None = None
    try:
        run_status_tui(
            controller=controller,
            refresh_seconds=refresh_seconds,
            service_signal_queue=service_signals,
            on_shutdown=controller.stop,
        )
    except BaseException as exc:  # noqa: BLE001
        tui_error = exc
    finally:
        controller.stop()
        service_thread.join(timeout=_service_join_timeout_seconds(config))

    if service_thread.is_alive():
        raise RuntimeError("Service loops did not stop after the status UI shut down.")
    if service_errors:
        error = service_errors[0]
        if isinstance(error, Exception):
            raise error
        raise RuntimeError("Service thread failed with a non-Exception error.") from error
    if tui_error is not None:
        raise tui_error


def _service_join_timeout_seconds(config: AppConfig) -> float:
    return max(1.0, float(config.runtime.monitor_interval_seconds) + 5.0)


def _is_interactive_terminal() -> bool:
    return bool(sys.stdin.isatty() and sys.stdout.isatty())
