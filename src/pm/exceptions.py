class PmError(Exception):
    """Base class for every failure raised by the install pipeline.

    Carries the context needed to make the failing object unambiguous:
    the package identifier, the archive path or file path involved, and a
    byte offset where one is meaningful.
    """

    stage = "install"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        package: str | None = None,
        path: str | None = None,
        offset: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.package = package
        self.path = path
        self.offset = offset

    def __str__(self) -> str:
        context = []
        if self.package is not None:
            context.append(f"package={self.package}")
        if self.path is not None:
            context.append(f"path={self.path}")
        if self.offset is not None:
            context.append(f"offset={self.offset}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ConfigError(PmError):
    stage = "config"


class ResolutionError(PmError):
    stage = "resolve"


class TransportError(PmError):
    stage = "fetch"
    retryable = True

    def __init__(
        self, message: str, *, status_code: int | None = None, **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class CacheError(PmError):
    stage = "cache"


class FormatError(PmError):
    stage = "format"


class ArchiveError(FormatError):
    pass


class ArchiveNotFoundError(ArchiveError):
    pass


class ArchiveUnreadableError(ArchiveError):
    pass


class EntryNotFoundError(ArchiveError):
    pass


class TrustError(PmError):
    stage = "trust"


class SignatureMissingError(TrustError):
    pass


class MalformedSignatureError(TrustError):
    pass


class UntrustedSignatureError(TrustError):
    pass


class ContentError(PmError):
    stage = "content"


class UndeclaredFileError(ContentError):
    pass


class ChecksumMismatchError(ContentError):
    def __init__(
        self, message: str, *, expected: str, actual: str, **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.expected = expected
        self.actual = actual


class MissingDeclaredFileError(ContentError):
    def __init__(self, message: str, *, missing: list[str], **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.missing = missing


class CommitError(PmError):
    stage = "commit"
