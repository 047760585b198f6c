"""
OCI image store error classes.

Provides a clear taxonomy of errors that can occur while reading or mutating
an on-disk image. Every error names the operation and the digest or
reference it concerns so callers can decide how to recover.
"""
from __future__ import annotations


class OciError(Exception):
    """
    Base class for all OCI image store errors.
    
    Callers that only want to distinguish "our" failures from programming
    errors can catch this single type.
    """
    pass


class OciNotFound(OciError):
    """
    Blob, reference or image layout not found.
    
    Raised when:
    - A blob digest has no file in the blob directory
    - A reference name has no entry in the references directory
    - The image root has no oci-layout file
    
    Recoverable: the caller decides whether absence is an error.
    """
    pass


class OciDigestMismatch(OciError):
    """
    Stored bytes do not hash to their key.
    
    Raised when:
    - A blob read to EOF hashes to something other than its digest
    - An existing blob has a different size than a new write of the same digest
    - A descriptor's size disagrees with the blob it points at
    
    Fatal: signals store corruption and is never repaired automatically.
    """
    
    def __init__(self, message: str, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class OciUnsupportedMediaType(OciError):
    """
    Descriptor media type is not one the engine knows how to decode.
    
    Raised when:
    - get_blob() is asked to decode an unrecognized media type
    - A layer uses a compression this tool cannot read
    """
    pass


class OciAmbiguousReference(OciError):
    """
    Reference resolves to more than one manifest.
    
    Raised when a mutation is requested on a name that points at a
    manifest list with several entries. No automatic selection is made.
    """
    pass


class OciInvalidState(OciError):
    """
    Operation called in the wrong state.
    
    Raised when:
    - Mutator.commit() is called before open() or after the mutation ended
    - The base descriptor is not a single image manifest
    - The engine is used after close()
    - Config history no longer matches the layer list
    """
    pass


class OciStorageError(OciError):
    """
    Filesystem operation failed.
    
    Wraps the underlying OSError with the operation and the digest or
    reference name being processed.
    """
    
    def __init__(self, operation: str, identifier: str, cause: Exception | None = None):
        self.operation = operation
        self.identifier = identifier
        self.cause = cause
        msg = f"Storage error during {operation}: {identifier}"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)


__all__ = [
    "OciError",
    "OciNotFound",
    "OciDigestMismatch",
    "OciUnsupportedMediaType",
    "OciAmbiguousReference",
    "OciInvalidState",
    "OciStorageError",
]
