from .outcome import AppError, Err, ErrorKind, Ok, Outcome

__all__ = [
    "AppError",
    "Err",
    "ErrorKind",
    "Ok",
    "Outcome",
]
