"""
dialogs.py – Interactive destination selection.

The Gateway asks the user where to write exports and backups through a
SaveDialog.  A dialog returns the chosen path, or None when the user
cancels; cancelling is an ordinary outcome, not an error.

TkSaveDialog is the real implementation (tkinter's native "Save as…"
dialog).  Tests substitute any object with the same ask_save_path()
method.
"""

import os
from typing import Optional, Sequence, Tuple

FileTypes = Sequence[Tuple[str, str]]

CSV_FILETYPES: FileTypes = [("CSV file", "*.csv"), ("All files", "*.*")]
XLSX_FILETYPES: FileTypes = [("Excel workbook", "*.xlsx"), ("All files", "*.*")]
BACKUP_FILETYPES: FileTypes = [("Encrypted backup", "*.zip"), ("All files", "*.*")]


class SaveDialog:
    """Interface: ask the user for a destination file path."""

    def ask_save_path(
        self, title: str, default_name: str, filetypes: FileTypes
    ) -> Optional[str]:
        raise NotImplementedError


class TkSaveDialog(SaveDialog):
    """
    Native save dialog parented to *root*.

    A hidden Tk root is created on first use when none is supplied.
    """

    def __init__(self, root=None) -> None:
        self.root = root

    def _parent(self):
        if self.root is None:
            from tkinter import Tk
            self.root = Tk()
            self.root.withdraw()
        return self.root

    def ask_save_path(
        self, title: str, default_name: str, filetypes: FileTypes
    ) -> Optional[str]:
        from tkinter import filedialog

        parent = self._parent()
        path = filedialog.asksaveasfilename(
            parent=parent,
            title=title,
            initialfile=default_name,
            defaultextension=os.path.splitext(default_name)[1],
            filetypes=list(filetypes),
        )
        # Tk reports cancellation as "" (or an empty tuple on some platforms).
        if not path:
            return None
        return str(path)
