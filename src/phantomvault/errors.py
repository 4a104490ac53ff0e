"""Exceptions raised by the backup engine"""


class PhantomVaultError(Exception):
    """Base class for every error raised by the backup engine"""


class ArchiveFormatError(PhantomVaultError):
    """The archive is missing its manifest, is unparseable or structurally invalid"""


class WrongPasswordError(PhantomVaultError):
    """The password does not open the encrypted archive"""

    def __init__(self, message: str = "Wrong password"):
        super().__init__(message)


class PasswordRequiredError(PhantomVaultError):
    """The archive is encrypted but no password was supplied"""

    def __init__(self, message: str = "This backup is encrypted, a password is required"):
        super().__init__(message)


class StorageError(PhantomVaultError):
    """A relational or object store operation failed"""


class OperationCancelledError(PhantomVaultError):
    """The caller aborted the export or import"""

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)
