from PySide6.QtGui import QIcon, QAction
from PySide6.QtWidgets import QSystemTrayIcon, QMenu, QMainWindow


class TrayIcon(QSystemTrayIcon):
    def __init__(self, window: QMainWindow, on_toggle_process, on_reconnect, on_quit, parent=None):
        super().__init__(parent)
        self.window = window
        self.on_toggle_process = on_toggle_process
        self.on_quit = on_quit

        self.setIcon(QIcon.fromTheme("network-vpn"))
        if not window.windowIcon().isNull():
            self.setIcon(window.windowIcon())

        self.menu = QMenu()
        act_show = QAction("显示窗口", self.menu)
        act_hide = QAction("隐藏窗口", self.menu)
        self.act_toggle = QAction("启动", self.menu)
        self.act_reconnect = QAction("重新连接", self.menu)
        self.act_reconnect.setVisible(False)
        act_quit = QAction("退出", self.menu)

        act_show.triggered.connect(self._show_main)
        act_hide.triggered.connect(self.window.hide)
        self.act_toggle.triggered.connect(on_toggle_process)
        self.act_reconnect.triggered.connect(on_reconnect)
        act_quit.triggered.connect(on_quit)

        self.menu.addAction(act_show)
        self.menu.addAction(act_hide)
        self.menu.addAction(self.act_toggle)
        self.menu.addAction(self.act_reconnect)
        self.menu.addSeparator()
        self.menu.addAction(act_quit)

        self.setContextMenu(self.menu)
        self.setToolTip("ECH Workers 客户端")

        self.activated.connect(self._on_activated)

    def update_status(self, running: bool, enabled: bool = True, connected: bool = True) -> None:
        self.act_toggle.setText("停止" if running else "启动")
        self.act_toggle.setEnabled(enabled)
        self.act_reconnect.setVisible(not connected)

    def _show_main(self) -> None:
        self.window.showNormal()
        self.window.activateWindow()

    def _on_activated(self, reason) -> None:
        if reason == QSystemTrayIcon.Trigger:
            if self.window.isHidden():
                self._show_main()
            else:
                self.window.hide()
