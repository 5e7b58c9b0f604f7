"""Primitivas de cifrado autenticado (AES-256-GCM)"""
import os
from typing import NamedTuple, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shared.errors import IntegrityError

KEY_LENGTH = 32  # 256 bits
NONCE_LENGTH = 12  # 96 bits, recomendado para GCM
TAG_LENGTH = 16  # 128 bits


class SealedBox(NamedTuple):
    nonce: bytes
    ciphertext: bytes
    tag: bytes


def generate_key() -> bytes:
    """Generar material de llave aleatorio para AES-256"""
    return AESGCM.generate_key(bit_length=KEY_LENGTH * 8)


def encrypt(key: bytes, plaintext: bytes, associated_data: Optional[bytes] = None) -> SealedBox:
    """
    Cifrar con un nonce aleatorio nuevo en cada llamada.

    Returns:
        SealedBox con nonce, ciphertext y tag separados
    """
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(key).encrypt(nonce, plaintext, associated_data)
    return SealedBox(nonce=nonce, ciphertext=sealed[:-TAG_LENGTH], tag=sealed[-TAG_LENGTH:])


def decrypt(
    key: bytes,
    nonce: bytes,
    ciphertext: bytes,
    tag: bytes,
    associated_data: Optional[bytes] = None
) -> bytes:
    """
    Descifrar verificando el tag antes de devolver cualquier byte.

    Raises:
        IntegrityError: si el tag, el nonce, el ciphertext o los datos asociados no coinciden
    """
    if len(tag) != TAG_LENGTH or len(nonce) != NONCE_LENGTH:
        raise IntegrityError("Datos cifrados corruptos")
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, associated_data)
    except InvalidTag:
        raise IntegrityError("Tag de autenticación inválido") from None


def wrap(master_key: bytes, key_material: bytes, associated_data: bytes) -> bytes:
    """Envolver una llave de datos bajo la llave maestra (nonce || ciphertext || tag)"""
    box = encrypt(master_key, key_material, associated_data)
    return box.nonce + box.ciphertext + box.tag


def unwrap(master_key: bytes, wrapped: bytes, associated_data: bytes) -> bytes:
    """Desenvolver una llave de datos; IntegrityError si no corresponde a la llave maestra"""
    nonce = wrapped[:NONCE_LENGTH]
    ciphertext = wrapped[NONCE_LENGTH:-TAG_LENGTH]
    tag = wrapped[-TAG_LENGTH:]
    return decrypt(master_key, nonce, ciphertext, tag, associated_data)
