import os
from typing import Protocol, Union

PathLike = Union[str, "os.PathLike[str]"]


class Sink(Protocol):
    ''' Destination of downloaded archives and logs. Failures raise OSError. '''
    def create_or_truncate(self, path: PathLike) -> None: ...
    def append(self, path: PathLike, data: bytes) -> None: ...


class FileSink:
    ''' Sink writing to the local file system '''
    def create_or_truncate(self, path: PathLike) -> None:
        with open(path, "wb"):
            pass

    def append(self, path: PathLike, data: bytes) -> None:
        with open(path, "ab") as f:
            f.write(data)
