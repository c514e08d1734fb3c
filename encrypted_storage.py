# encrypted_storage.py
import json
import logging
import os
import tempfile

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes
from tinydb.storages import Storage

logger = logging.getLogger("giftiz.storage")

NONCE_SIZE = 12
TAG_SIZE = 16


class StorageDecryptionError(RuntimeError):
    """Raised when the DB file cannot be decrypted with the configured key."""


class EncryptedJSONStorage(Storage):
    """
    AES-GCM encrypted TinyDB storage.
    Stores: [nonce][tag][ciphertext]
    A plaintext JSON file (e.g. written with DB_ENCRYPTION=false) is still
    readable and gets encrypted on the next write.
    """

    def __init__(self, filename: str, key: bytes):
        if not key:
            raise ValueError("Encryption key must be provided.")
        self.filename = filename
        self.key = key  # must be 16/24/32 bytes (we use 32)
        d = os.path.dirname(os.path.abspath(filename))
        if d and not os.path.isdir(d):
            os.makedirs(d, exist_ok=True)

    def read(self):
        if not os.path.exists(self.filename):
            return None

        with open(self.filename, "rb") as f:
            raw = f.read()

        if not raw.strip():
            return None

        if raw.lstrip().startswith(b"{"):
            logger.info("Reading plaintext DB %s; it will be encrypted on next write", self.filename)
            return json.loads(raw.decode("utf-8"))

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise StorageDecryptionError(f"{self.filename} is truncated")

        nonce = raw[:NONCE_SIZE]
        tag = raw[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = raw[NONCE_SIZE + TAG_SIZE:]

        cipher = AES.new(self.key, AES.MODE_GCM, nonce=nonce)
        try:
            decrypted = cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as e:
            logger.error("DB %s is corrupted or was written with another key", self.filename)
            raise StorageDecryptionError(str(e)) from e

        return json.loads(decrypted.decode("utf-8"))

    def write(self, data):
        plaintext = json.dumps(data, ensure_ascii=False).encode("utf-8")

        nonce = get_random_bytes(NONCE_SIZE)
        cipher = AES.new(self.key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)

        # one temp file per write so concurrent writers never share it
        fd, tmp = tempfile.mkstemp(prefix=os.path.basename(self.filename) + ".",
                                   suffix=".tmp", dir=os.path.dirname(os.path.abspath(self.filename)))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(nonce + tag + ciphertext)
            os.replace(tmp, self.filename)
        except OSError:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
