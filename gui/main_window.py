import asyncio
import html
from typing import Any, Coroutine, Dict, List, Optional, Set

from PySide6.QtCore import Qt, Signal, QObject
from PySide6.QtWidgets import (
    QMainWindow,
    QWidget,
    QVBoxLayout,
    QHBoxLayout,
    QFormLayout,
    QLabel,
    QPushButton,
    QComboBox,
    QLineEdit,
    QRadioButton,
    QButtonGroup,
    QPlainTextEdit,
    QSplitter,
    QGroupBox,
)

from echgui.log_buffer import LogEntry, LogLevel
from echgui.state import OP_INIT, ControlStates, MirrorState
from echgui.synchronizer import StateSynchronizer
from echgui.types import FormDraft, ServerProfile
from .prompt_dialog import ask_text, confirm

ROUTING_LABELS = (
    ("global", "全局代理"),
    ("bypass_cn", "绕过大陆"),
    ("none", "不改变代理"),
)

SAVE_TEXT = "保存配置"
SAVED_TEXT = "已保存 ✓"


class SyncSignals(QObject):
    state_changed = Signal(object, object)
    profiles_changed = Signal(list, object)
    draft_loaded = Signal(object)
    selection_reverted = Signal(object)
    save_acknowledged = Signal(bool)
    log_appended = Signal(object)
    log_cleared = Signal()


class MainWindow(QMainWindow):
    def __init__(self, signals: SyncSignals, sync: StateSynchronizer, max_log_lines: int = 500):
        super().__init__()
        self.signals = signals
        self.sync = sync
        self._tasks: Set[asyncio.Task] = set()
        self._quitting = False

        self.setWindowTitle("ECH Workers 客户端")
        self.resize(720, 640)

        self.status_label_run = QLabel("状态: 停止")
        self.status_label_proxy = QLabel("系统代理: 关闭")
        top_bar = QHBoxLayout()
        top_bar.addWidget(self.status_label_run)
        top_bar.addWidget(self.status_label_proxy)
        top_bar.addStretch()

        self.server_select = QComboBox()
        self.btn_add = QPushButton("新增")
        self.btn_rename = QPushButton("重命名")
        self.btn_delete = QPushButton("删除")
        self.btn_reconnect = QPushButton("重新连接")
        server_bar = QHBoxLayout()
        server_bar.addWidget(QLabel("服务器"))
        server_bar.addWidget(self.server_select, 1)
        server_bar.addWidget(self.btn_add)
        server_bar.addWidget(self.btn_rename)
        server_bar.addWidget(self.btn_delete)
        server_bar.addWidget(self.btn_reconnect)

        self.inputs: Dict[str, QLineEdit] = {
            "server": QLineEdit(),
            "listen": QLineEdit(),
            "token": QLineEdit(),
            "ip": QLineEdit(),
            "dns": QLineEdit(),
            "ech": QLineEdit(),
        }
        self.inputs["server"].setPlaceholderText("example.com:443")
        self.inputs["listen"].setPlaceholderText("127.0.0.1:30000")
        self.inputs["token"].setEchoMode(QLineEdit.Password)

        form = QFormLayout()
        form.addRow("服务地址", self.inputs["server"])
        form.addRow("监听地址", self.inputs["listen"])
        form.addRow("身份令牌", self.inputs["token"])

        self.btn_toggle_advanced = QPushButton("高级设置 ▸")
        self.btn_toggle_advanced.setFlat(True)
        self.advanced_panel = QWidget()
        advanced_form = QFormLayout(self.advanced_panel)
        advanced_form.setContentsMargins(0, 0, 0, 0)
        advanced_form.addRow("优选 IP", self.inputs["ip"])
        advanced_form.addRow("DoH 服务器", self.inputs["dns"])
        advanced_form.addRow("ECH 域名", self.inputs["ech"])
        self.advanced_panel.setVisible(False)

        self.routing_group = QButtonGroup(self)
        self.routing_buttons: Dict[str, QRadioButton] = {}
        routing_box = QGroupBox("分流模式")
        routing_layout = QHBoxLayout(routing_box)
        for mode, label in ROUTING_LABELS:
            radio = QRadioButton(label)
            self.routing_buttons[mode] = radio
            self.routing_group.addButton(radio)
            routing_layout.addWidget(radio)
        routing_layout.addStretch()

        self.btn_start = QPushButton("启动")
        self.btn_stop = QPushButton("停止")
        self.btn_proxy = QPushButton("设置系统代理")
        self.btn_save = QPushButton(SAVE_TEXT)
        btn_bar = QHBoxLayout()
        btn_bar.addWidget(self.btn_start)
        btn_bar.addWidget(self.btn_stop)
        btn_bar.addWidget(self.btn_proxy)
        btn_bar.addStretch()
        btn_bar.addWidget(self.btn_save)

        settings = QWidget()
        settings_layout = QVBoxLayout(settings)
        settings_layout.setContentsMargins(0, 0, 0, 0)
        settings_layout.addLayout(server_bar)
        settings_layout.addLayout(form)
        settings_layout.addWidget(self.btn_toggle_advanced, 0, Qt.AlignLeft)
        settings_layout.addWidget(self.advanced_panel)
        settings_layout.addWidget(routing_box)
        settings_layout.addLayout(btn_bar)

        self.log_view = QPlainTextEdit()
        self.log_view.setReadOnly(True)
        self.log_view.setMaximumBlockCount(max_log_lines)
        self.btn_clear_log = QPushButton("清空日志")
        log_container = QWidget()
        log_layout = QVBoxLayout(log_container)
        log_layout.setContentsMargins(0, 0, 0, 0)
        log_layout.addWidget(self.log_view)
        log_layout.addWidget(self.btn_clear_log, 0, Qt.AlignRight)

        splitter = QSplitter(Qt.Vertical)
        splitter.addWidget(settings)
        splitter.addWidget(log_container)
        splitter.setStretchFactor(0, 2)
        splitter.setStretchFactor(1, 1)

        main_layout = QVBoxLayout()
        main_layout.addLayout(top_bar)
        main_layout.addWidget(splitter)

        container = QWidget()
        container.setLayout(main_layout)
        self.setCentralWidget(container)

        self.server_select.activated.connect(self._on_server_activated)
        self.btn_add.clicked.connect(lambda: self.run_task(self._add_server()))
        self.btn_rename.clicked.connect(lambda: self.run_task(self._rename_server()))
        self.btn_delete.clicked.connect(lambda: self.run_task(self._delete_server()))
        self.btn_reconnect.clicked.connect(lambda: self.run_task(self.sync.reconnect()))
        self.btn_start.clicked.connect(lambda: self.run_task(self.sync.start()))
        self.btn_stop.clicked.connect(lambda: self.run_task(self.sync.stop()))
        self.btn_proxy.clicked.connect(lambda: self.run_task(self.sync.toggle_proxy()))
        self.btn_save.clicked.connect(lambda: self.run_task(self.sync.save()))
        self.btn_clear_log.clicked.connect(self.sync.clear_log)
        self.btn_toggle_advanced.clicked.connect(self._toggle_advanced)
        self.routing_group.buttonClicked.connect(self._on_routing_clicked)
        for key, edit in self.inputs.items():
            edit.textEdited.connect(lambda text, key=key: self.sync.update_draft(**{key: text}))

        self.signals.state_changed.connect(self.on_state_changed)
        self.signals.profiles_changed.connect(self.on_profiles_changed)
        self.signals.draft_loaded.connect(self.on_draft_loaded)
        self.signals.selection_reverted.connect(self.on_selection_reverted)
        self.signals.save_acknowledged.connect(self.on_save_acknowledged)
        self.signals.log_appended.connect(self.append_log)
        self.signals.log_cleared.connect(self.log_view.clear)

        self.on_state_changed(self.sync.state, self.sync.controls)

    def run_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def quit(self) -> None:
        self._quitting = True
        self.close()

    def closeEvent(self, event) -> None:
        # Closing the window only hides it; quit goes through the tray
        if self._quitting:
            event.accept()
        else:
            event.ignore()
            self.hide()

    def _toggle_advanced(self) -> None:
        visible = not self.advanced_panel.isVisible()
        self.advanced_panel.setVisible(visible)
        self.btn_toggle_advanced.setText("高级设置 ▾" if visible else "高级设置 ▸")

    def _on_server_activated(self, index: int) -> None:
        server_id = self.server_select.itemData(index)
        if server_id is not None:
            self.run_task(self.sync.switch_profile(server_id))

    def _on_routing_clicked(self, button: QRadioButton) -> None:
        for mode, radio in self.routing_buttons.items():
            if radio is button:
                self.sync.select_routing_mode(mode)

    async def _add_server(self) -> None:
        name = await ask_text(self, "新增服务器", "请输入服务器名称")
        if name:
            await self.sync.add_profile(name)

    async def _rename_server(self) -> None:
        current = self.server_select.currentText()
        name = await ask_text(self, "重命名服务器", "请输入新名称", current)
        if name:
            await self.sync.rename_profile(name)

    async def _delete_server(self) -> None:
        if await confirm(self, "删除服务器", "确定要删除当前服务器配置吗？"):
            await self.sync.delete_profile()

    def append_log(self, entry: LogEntry) -> None:
        text = entry.render()
        if entry.level is LogLevel.ERROR:
            self.log_view.appendHtml(f'<span style="color: #d9534f">{html.escape(text)}</span>')
        else:
            self.log_view.appendPlainText(text)

    def on_state_changed(self, state: MirrorState, controls: ControlStates) -> None:
        if state.running:
            self.status_label_run.setText("状态: 运行")
            self.status_label_run.setStyleSheet("color: green")
        else:
            self.status_label_run.setText("状态: 停止")
            self.status_label_run.setStyleSheet("color: red")

        if state.proxy_enabled:
            self.status_label_proxy.setText("系统代理: 开启")
            self.btn_proxy.setText("关闭系统代理")
            self.btn_proxy.setStyleSheet("background-color: #2e7d32; color: white")
        else:
            self.status_label_proxy.setText("系统代理: 关闭")
            self.btn_proxy.setText("设置系统代理")
            self.btn_proxy.setStyleSheet("")

        self.btn_start.setEnabled(controls.start)
        self.btn_stop.setEnabled(controls.stop)
        self.btn_proxy.setEnabled(controls.proxy)
        self.btn_save.setEnabled(controls.save)
        self.server_select.setEnabled(controls.selector)
        self.btn_add.setEnabled(controls.add)
        self.btn_rename.setEnabled(controls.rename)
        self.btn_delete.setEnabled(controls.delete)
        # Refresh while idle, retry the connection after a failed start-up
        self.btn_reconnect.setText("刷新" if state.ready else "重新连接")
        self.btn_reconnect.setEnabled(OP_INIT not in state.pending and (controls.selector or not state.ready))
        for edit in self.inputs.values():
            edit.setEnabled(controls.inputs)
        for radio in self.routing_buttons.values():
            radio.setEnabled(controls.inputs)

    def on_profiles_changed(self, profiles: List[ServerProfile], current_id: Optional[str]) -> None:
        self.server_select.blockSignals(True)
        self.server_select.clear()
        for profile in profiles:
            self.server_select.addItem(profile.name, profile.id)
        self.server_select.blockSignals(False)
        self.on_selection_reverted(current_id)

    def on_selection_reverted(self, current_id: Optional[str]) -> None:
        index = self.server_select.findData(current_id) if current_id is not None else -1
        self.server_select.blockSignals(True)
        self.server_select.setCurrentIndex(index)
        self.server_select.blockSignals(False)

    def on_draft_loaded(self, draft: FormDraft) -> None:
        for key, edit in self.inputs.items():
            edit.setText(getattr(draft, key))

        self.routing_group.setExclusive(False)
        for mode, radio in self.routing_buttons.items():
            radio.setChecked(mode == draft.routing_mode)
        self.routing_group.setExclusive(True)

    def on_save_acknowledged(self, active: bool) -> None:
        self.btn_save.setText(SAVED_TEXT if active else SAVE_TEXT)
