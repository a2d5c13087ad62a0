import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)


class DebugDumper:
    """Writes intermediate artifacts of each invoice to disk when enabled."""

    def __init__(self, path: str = "debug", enabled: bool = False):
        self.path = path
        self.enabled = enabled

    def _write(self, invoice_number: str, suffix: str, content: str) -> Optional[str]:
        if not self.enabled:
            return None
        os.makedirs(self.path, exist_ok=True)
        safe_number = "".join(c if c.isalnum() or c in "-_" else "_" for c in invoice_number)
        file_path = os.path.join(self.path, f"{safe_number}_{suffix}")
        with open(file_path, "w", encoding="utf-8") as f:
            f.write(content)
        logger.debug("Wrote %s", file_path)
        return file_path

    def unsigned(self, invoice_number: str, xml: str) -> Optional[str]:
        return self._write(invoice_number, "unsigned.xml", xml)

    def signed(self, invoice_number: str, xml: str) -> Optional[str]:
        return self._write(invoice_number, "signed.xml", xml)

    def qr(self, invoice_number: str, qr: str) -> Optional[str]:
        return self._write(invoice_number, "qr.txt", qr)

    def invoice_hash(self, invoice_number: str, invoice_hash: str) -> Optional[str]:
        return self._write(invoice_number, "hash.txt", invoice_hash)
