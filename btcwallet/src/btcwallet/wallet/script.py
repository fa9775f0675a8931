"""
Bitcoin script construction and parsing for the script types we spend:
P2WPKH single-key outputs and bare m-of-n CHECKMULTISIG redeem scripts.
"""

from __future__ import annotations

from btccore.constants import MAX_MULTISIG_KEYS

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1 = 0x51
OP_16 = 0x60
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKMULTISIG = 0xAE


class ScriptError(ValueError):
    pass


def push_data(data: bytes) -> bytes:
    """Minimal push of arbitrary data"""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + length.to_bytes(4, "little") + data


def small_int_opcode(n: int) -> int:
    """OP_0 / OP_1..OP_16 for a small integer"""
    if n == 0:
        return OP_0
    if 1 <= n <= 16:
        return OP_1 + n - 1
    raise ScriptError(f"Not a small integer: {n}")


def decode_small_int(opcode: int) -> int | None:
    if opcode == OP_0:
        return 0
    if OP_1 <= opcode <= OP_16:
        return opcode - OP_1 + 1
    return None


def parse_script(script: bytes) -> list[int | bytes]:
    """
    Split a script into opcodes (int) and pushed data (bytes).
    Raises ScriptError on truncated pushes.
    """
    items: list[int | bytes] = []
    offset = 0

    while offset < len(script):
        opcode = script[offset]
        offset += 1

        if 0 < opcode < OP_PUSHDATA1:
            length = opcode
        elif opcode == OP_PUSHDATA1:
            length = script[offset] if offset < len(script) else -1
            offset += 1
        elif opcode == OP_PUSHDATA2:
            length = int.from_bytes(script[offset : offset + 2], "little")
            offset += 2
        elif opcode == OP_PUSHDATA4:
            length = int.from_bytes(script[offset : offset + 4], "little")
            offset += 4
        else:
            items.append(opcode)
            continue

        if length < 0 or offset + length > len(script):
            raise ScriptError("Truncated push in script")

        items.append(script[offset : offset + length])
        offset += length

    return items


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-hash> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    """OP_0 <20-byte-hash>"""
    return bytes([OP_0, 0x14]) + pubkey_hash


def p2sh_script(script_hash: bytes) -> bytes:
    """OP_HASH160 <20-byte-hash> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + script_hash + bytes([OP_EQUAL])


def is_p2wpkh(script: bytes) -> bool:
    return len(script) == 22 and script[0] == OP_0 and script[1] == 0x14


def is_p2sh(script: bytes) -> bool:
    return (
        len(script) == 23
        and script[0] == OP_HASH160
        and script[1] == 0x14
        and script[22] == OP_EQUAL
    )


def build_multisig_script(threshold: int, pubkeys: list[bytes]) -> bytes:
    """OP_m <pubkey>... OP_n OP_CHECKMULTISIG, keys in the order given"""
    if not pubkeys or len(pubkeys) > MAX_MULTISIG_KEYS:
        raise ScriptError(f"Multisig needs 1-{MAX_MULTISIG_KEYS} keys, got {len(pubkeys)}")
    if not 1 <= threshold <= len(pubkeys):
        raise ScriptError(f"Threshold {threshold} invalid for {len(pubkeys)} keys")

    script = bytes([small_int_opcode(threshold)])
    for pubkey in pubkeys:
        script += push_data(pubkey)
    script += bytes([small_int_opcode(len(pubkeys)), OP_CHECKMULTISIG])
    return script


def parse_multisig_script(script: bytes) -> tuple[int, list[bytes]] | None:
    """Return (threshold, pubkeys) for a bare multisig script, else None."""
    try:
        items = parse_script(script)
    except ScriptError:
        return None

    if len(items) < 4 or items[-1] != OP_CHECKMULTISIG:
        return None

    first, count = items[0], items[-2]
    if not isinstance(first, int) or not isinstance(count, int):
        return None

    threshold = decode_small_int(first)
    key_count = decode_small_int(count)
    pubkeys = items[1:-2]

    if not threshold or not key_count or key_count != len(pubkeys) or threshold > key_count:
        return None
    if not all(isinstance(pk, bytes) and len(pk) in (33, 65) for pk in pubkeys):
        return None

    return threshold, [pk for pk in pubkeys if isinstance(pk, bytes)]
