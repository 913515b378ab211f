import asyncio
import logging
import sys

from PySide6 import QtAsyncio
from PySide6.QtWidgets import QApplication, QStyle

from echgui.config import ConfigManager
from echgui.http_backend import HttpBackend
from echgui.log_buffer import LogBuffer
from echgui.synchronizer import StateSynchronizer

from gui.main_window import MainWindow, SyncSignals
from gui.tray import TrayIcon

logger = logging.getLogger("echgui")


async def _bootstrap(sync: StateSynchronizer) -> None:
    # Listen before the initial queries so no lifecycle event is missed
    events = asyncio.ensure_future(sync.pump_events())
    await sync.initialize()
    await events


def main() -> None:
    app = QApplication(sys.argv)
    app.setApplicationName("ECHWorkersClient")
    app.setQuitOnLastWindowClosed(False)

    icon = app.style().standardIcon(QStyle.SP_DriveNetIcon)
    app.setWindowIcon(icon)

    cfg = ConfigManager()
    data = cfg.get_all()

    logging.basicConfig(
        level=str(data.get("log_level", "INFO")).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("using config %s", cfg.path)

    signals = SyncSignals()

    log = LogBuffer(
        max_lines=cfg.get("log_max_lines"),
        on_append=lambda entry: signals.log_appended.emit(entry),
        on_clear=lambda: signals.log_cleared.emit(),
    )

    backend = HttpBackend(
        base_url=cfg.get("backend_url"),
        timeout=cfg.get("request_timeout"),
        event_poll_timeout=cfg.get("event_poll_timeout"),
        event_retry_seconds=cfg.get("event_retry_seconds"),
    )

    sync = StateSynchronizer(
        backend,
        log,
        on_state_changed=lambda state, controls: signals.state_changed.emit(state, controls),
        on_profiles_changed=lambda profiles, current: signals.profiles_changed.emit(profiles, current),
        on_draft_loaded=lambda draft: signals.draft_loaded.emit(draft),
        on_selection_reverted=lambda current: signals.selection_reverted.emit(current),
        on_save_acknowledged=lambda active: signals.save_acknowledged.emit(active),
        save_ack_seconds=cfg.get("save_ack_seconds"),
        reconcile_seconds=cfg.get("reconcile_seconds"),
        shutdown_wait_seconds=cfg.get("shutdown_wait_seconds"),
    )

    win = MainWindow(signals=signals, sync=sync, max_log_lines=cfg.get("log_max_lines"))

    def on_toggle_process() -> None:
        if sync.state.running:
            win.run_task(sync.stop())
        else:
            win.run_task(sync.start())

    async def _quit() -> None:
        try:
            await sync.shutdown()
        finally:
            await backend.close()
            tray.hide()
            win.quit()
            app.quit()

    def on_reconnect() -> None:
        win.run_task(sync.reconnect())

    def on_quit() -> None:
        win.run_task(_quit())

    tray = TrayIcon(win, on_toggle_process, on_reconnect, on_quit)
    signals.state_changed.connect(
        lambda state, controls: tray.update_status(
            state.running, controls.stop if state.running else controls.start, state.ready
        )
    )
    tray.setIcon(icon)

    win.show()
    tray.show()

    QtAsyncio.run(_bootstrap(sync), keep_running=True, quit_qapp=True)


if __name__ == "__main__":
    main()
