"""Write sink that stays in memory until a threshold, then spills to a temp file."""

import io
import os
import tempfile
from typing import Any, BinaryIO, Optional

DEFAULT_SPILL_THRESHOLD_BYTES = 16 * 1024 * 1024


class SpillReadStream(io.FileIO):
    """Read stream over a spill file. Closing it deletes the file."""

    def close(self) -> None:
        path = self.name
        try:
            super().close()
        finally:
            if isinstance(path, str):
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass


class SpillableBuffer:
    """Binary write-only file object used to stage one export part.

    Writes accumulate in memory. The first write that would push the total
    past ``threshold_bytes`` copies what is buffered into a temporary file,
    and every later write goes to that file. Once the producer is done,
    ``get_read_stream()`` hands exactly one seekable stream to the consumer,
    who owns it from then on.

    Single producer, sequential writes. Not safe for concurrent use.
    """

    def __init__(
        self,
        threshold_bytes: int = DEFAULT_SPILL_THRESHOLD_BYTES,
        spill_directory: Optional[str] = None,
    ) -> None:
        """Initialize the buffer.

        Args:
            threshold_bytes: Bytes held in memory before spilling to disk
            spill_directory: Directory for the temp file (system default if None)
        """
        if threshold_bytes <= 0:
            raise ValueError("threshold_bytes must be positive")
        self.threshold_bytes = threshold_bytes
        self.spill_directory = spill_directory
        self._memory: Optional[io.BytesIO] = io.BytesIO()
        self._file: Optional[BinaryIO] = None
        self._spill_path: Optional[str] = None
        self._position = 0
        self._completed = False
        self._handed_over = False
        self._disposed = False

    @property
    def spilled(self) -> bool:
        return self._spill_path is not None

    @property
    def spill_path(self) -> Optional[str]:
        return self._spill_path

    @property
    def size(self) -> int:
        return self._position

    @property
    def closed(self) -> bool:
        return self._completed or self._disposed

    def writable(self) -> bool:
        return not self.closed

    def readable(self) -> bool:
        return False

    def seekable(self) -> bool:
        return False

    def tell(self) -> int:
        return self._position

    def write(self, data: Any) -> int:
        """Append bytes, spilling to disk when the threshold would be crossed.

        Args:
            data: Any bytes-like object

        Returns:
            Number of bytes written
        """
        if self.closed:
            raise ValueError("write to a completed or disposed SpillableBuffer")

        view = memoryview(data).cast("B")
        count = view.nbytes
        if count == 0:
            return 0

        if self._file is None and self._position + count > self.threshold_bytes:
            self._spill()

        if self._file is not None:
            self._file.write(view)
        else:
            assert self._memory is not None
            self._memory.write(view)
        self._position += count
        return count

    def flush(self) -> None:
        if self._file is not None and not self._file.closed:
            self._file.flush()

    def close(self) -> None:
        """Mark the producer as done. Idempotent; keeps the written content."""
        if self._completed or self._disposed:
            return
        self._completed = True
        if self._file is not None:
            self._file.flush()
            self._file.close()

    def get_read_stream(self) -> BinaryIO:
        """Complete the buffer and hand over a stream positioned at offset 0.

        May be called once. The caller owns the returned stream and must close
        it; closing a file-backed stream deletes the spill file.

        Raises:
            RuntimeError: If called twice or after dispose()
        """
        if self._disposed:
            raise RuntimeError("SpillableBuffer has been disposed")
        if self._handed_over:
            raise RuntimeError("read stream has already been handed over")

        self.close()
        self._handed_over = True

        if self._spill_path is not None:
            return SpillReadStream(self._spill_path, "rb")  # type: ignore[return-value]

        assert self._memory is not None
        stream = self._memory
        self._memory = None
        stream.seek(0)
        return stream

    def dispose(self) -> None:
        """Release buffers and delete a spill file that was never handed over."""
        if self._disposed:
            return
        self._disposed = True
        if self._file is not None and not self._file.closed:
            self._file.close()
        if self._spill_path is not None and not self._handed_over:
            try:
                os.remove(self._spill_path)
            except FileNotFoundError:
                pass
        if self._memory is not None:
            self._memory.close()
            self._memory = None

    def __enter__(self) -> "SpillableBuffer":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()

    def _spill(self) -> None:
        fd, path = tempfile.mkstemp(
            prefix="parquet_spill_", suffix=".tmp", dir=self.spill_directory
        )
        self._spill_path = path
        try:
            self._file = os.fdopen(fd, "wb")
        except OSError:
            os.close(fd)
            raise
        assert self._memory is not None
        buffered = self._memory.getbuffer()
        try:
            self._file.write(buffered)
        finally:
            buffered.release()
        self._memory.close()
        self._memory = None
