import io
import logging
import os

import requests

logger = logging.getLogger(__name__)


class RemoteFileError(IOError):
    pass


class RemoteFile(io.RawIOBase):
    """
    Read-only, seekable view of a file served over HTTP. Every ``read`` is
    turned into a single range request, so the archive never has to be
    downloaded as a whole.
    """

    def __init__(self, url, session=None):
        super().__init__()
        self.url = url
        self.owns_session = session is None
        self.session = session or requests.Session()
        self.position = 0
        try:
            self.length = self._fetch_length()
        except Exception:
            self.close()
            raise

    def close(self):
        if not self.closed and self.owns_session:
            self.session.close()
        super().close()

    def _fetch_length(self):
        response = self.session.head(self.url, allow_redirects=True)
        if response.status_code == 200 and "Content-Length" in response.headers:
            content_length = int(response.headers["Content-Length"])
            logger.debug("%s is %d bytes long", self.url, content_length)
            return content_length
        raise RemoteFileError(
            f"Failed to retrieve content length. Status code: {response.status_code}"
        )

    def fetch_range(self, start_byte, end_byte):
        headers = {"Range": f"bytes={start_byte}-{end_byte}"}
        response = self.session.get(self.url, headers=headers)
        if response.status_code == 206:  # Partial content
            return response.content
        raise RemoteFileError(
            f"Failed to fetch byte range {start_byte}-{end_byte}. Status code: {response.status_code}"
        )

    def readable(self):
        return True

    def seekable(self):
        return True

    def tell(self):
        return self.position

    def seek(self, offset, whence=os.SEEK_SET):
        if whence == os.SEEK_SET:
            position = offset
        elif whence == os.SEEK_CUR:
            position = self.position + offset
        elif whence == os.SEEK_END:
            position = self.length + offset
        else:
            raise ValueError(f"Invalid whence: {whence}")
        if position < 0:
            raise ValueError(f"Negative seek position {position}")
        self.position = position
        return self.position

    def read(self, size=-1):
        if size is None or size < 0:
            size = self.length - self.position
        size = min(size, self.length - self.position)
        if size <= 0:
            return b""
        data = self.fetch_range(self.position, self.position + size - 1)
        self.position += len(data)
        return data

    def readinto(self, buffer):
        data = self.read(len(buffer))
        buffer[:len(data)] = data
        return len(data)
