import asyncio
from typing import Optional

from PySide6.QtWidgets import (
    QDialog,
    QFormLayout,
    QLineEdit,
    QDialogButtonBox,
    QMessageBox,
    QVBoxLayout,
    QWidget,
)


class TextPromptDialog(QDialog):
    def __init__(self, title: str, placeholder: str, default: str = "", parent=None):
        super().__init__(parent)
        self.setWindowTitle(title)

        self.edit = QLineEdit()
        self.edit.setPlaceholderText(placeholder)
        self.edit.setText(default)
        self.edit.selectAll()

        form = QFormLayout()
        form.addRow(self.edit)

        self.buttons = QDialogButtonBox(QDialogButtonBox.Ok | QDialogButtonBox.Cancel)
        self.buttons.accepted.connect(self.accept)
        self.buttons.rejected.connect(self.reject)
        self.edit.textChanged.connect(self._update_ok)
        self._update_ok()

        layout = QVBoxLayout()
        layout.addLayout(form)
        layout.addWidget(self.buttons)
        self.setLayout(layout)

    def _update_ok(self) -> None:
        self.buttons.button(QDialogButtonBox.Ok).setEnabled(bool(self.get_result()))

    def get_result(self) -> str:
        return self.edit.text().strip()


async def ask_text(parent: QWidget, title: str, placeholder: str, default: str = "") -> Optional[str]:
    """Show a modal text prompt; resolves to the trimmed text, or None if cancelled."""
    dlg = TextPromptDialog(title, placeholder, default, parent)
    future: asyncio.Future = asyncio.get_running_loop().create_future()

    def _finished(result: int) -> None:
        if not future.done():
            accepted = result == QDialog.Accepted
            future.set_result(dlg.get_result() if accepted else None)

    dlg.finished.connect(_finished)
    dlg.open()
    try:
        return await future
    finally:
        dlg.deleteLater()


async def confirm(parent: QWidget, title: str, text: str) -> bool:
    box = QMessageBox(parent)
    box.setWindowTitle(title)
    box.setText(text)
    box.setStandardButtons(QMessageBox.Yes | QMessageBox.No)
    box.setDefaultButton(QMessageBox.No)
    future: asyncio.Future = asyncio.get_running_loop().create_future()

    def _finished(_result: int) -> None:
        if not future.done():
            future.set_result(box.standardButton(box.clickedButton()) == QMessageBox.Yes)

    box.finished.connect(_finished)
    box.open()
    try:
        return await future
    finally:
        box.deleteLater()
