from __future__ import annotations


class MitraError(Exception):
    """Base class for errors that are reported back to the partner."""

    message = "Terjadi kesalahan"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class ValidationFailed(MitraError):
    message = "Data tidak valid"


class OrderNotFound(MitraError):
    message = "Pesanan tidak ditemukan"


class InvalidTransition(MitraError):
    message = "Status pesanan tidak dapat diubah"


class InsufficientBalance(MitraError):
    """Raised before any write when the balance cannot cover the commission."""

    def __init__(self, required: float, balance: float, shortfall: float, message: str):
        super().__init__(message)
        self.required = required
        self.balance = balance
        self.shortfall = shortfall


class BackendFailure(MitraError):
    """A database call failed; the operation was aborted and rolled back."""

    message = "Gagal memproses permintaan"
