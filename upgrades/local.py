import threading
import time
import typing
from collections import defaultdict
from typing import Dict, List, Optional

from ape.utils import EMPTY_BYTES32
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from ethpm_types import MethodABI
from web3 import Web3

from upgrades.constants import EIP1967_ADMIN_SLOT, EIP1967_IMPLEMENTATION_SLOT
from upgrades.network import (
    ContractCall,
    NetworkClient,
    NetworkError,
    Receipt,
    TransactionReverted,
)

LOCAL_CHAIN_ID = 1337
BLOCK_TIME = 12  # seconds


def _address_word(address: ChecksumAddress) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])


def _word_address(word: bytes) -> ChecksumAddress:
    return to_checksum_address(word[-20:])


class LocalNetwork(NetworkClient):
    """
    In-process chain that understands EIP-1967 proxies; used to simulate
    upgrades before running them on a live network.

    Any bytecode starting with `proxy_creation_code` is treated as a proxy whose
    admin is the trailing constructor argument. Such proxies accept
    `initialize(address)` once and `upgradeToAndCall(address,bytes)` from their admin.

    Bytecode starting with `uups_creation_code` is an ERC1967Proxy of the UUPS kind,
    constructed with its implementation and the owner its initializer sets. It never
    writes the admin slot; `owner()` answers through the proxy and only the owner
    may call `upgradeToAndCall`.
    """

    def __init__(
        self,
        proxy_creation_code: bytes = b"",
        chain_id: int = LOCAL_CHAIN_ID,
        confirmation_delay: int = 0,
        latency: float = 0,
        genesis_timestamp: Optional[int] = None,
        uups_creation_code: bytes = b"",
    ):
        self._chain_id = chain_id
        self.proxy_creation_code = bytes(proxy_creation_code)
        self.uups_creation_code = bytes(uups_creation_code)
        self.confirmation_delay = confirmation_delay
        self.latency = latency
        self.offline = False

        self.block_number = 0
        self.timestamp = genesis_timestamp or int(time.time())
        self.published: List[bytes] = list()
        self.transactions: List[ContractCall] = list()
        self.events: List[typing.Dict] = list()

        self._lock = threading.RLock()
        self._code: Dict[ChecksumAddress, bytes] = dict()
        self._storage: Dict[ChecksumAddress, Dict[int, bytes]] = defaultdict(dict)
        self._owners: Dict[ChecksumAddress, ChecksumAddress] = dict()
        self._nonces: Dict[ChecksumAddress, int] = defaultdict(int)
        self._receipts: Dict[str, Receipt] = dict()
        self._pending_polls: Dict[str, int] = dict()

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def _check_online(self) -> None:
        if self.offline:
            raise NetworkError(f"Local network {self._chain_id} is offline")

    def _mine(self, sender: ChecksumAddress, data: bytes, contract_address=None) -> Receipt:
        nonce = self._nonces[sender]
        self._nonces[sender] += 1
        self.block_number += 1
        self.timestamp += BLOCK_TIME
        tx_hash = Web3.keccak(bytes.fromhex(sender[2:]) + nonce.to_bytes(32, "big") + data)
        receipt = Receipt(
            tx_hash=tx_hash.hex(),
            block_number=self.block_number,
            timestamp=self.timestamp,
            contract_address=contract_address,
        )
        self._receipts[receipt.tx_hash] = receipt
        self._pending_polls[receipt.tx_hash] = self.confirmation_delay
        return receipt

    def publish_bytecode(self, bytecode: bytes, sender: ChecksumAddress) -> str:
        self._check_online()
        sender = to_checksum_address(sender)
        bytecode = bytes(bytecode)
        if not bytecode:
            raise TransactionReverted("Contract creation without any data provided")
        if self.latency:
            time.sleep(self.latency)
        with self._lock:
            nonce = self._nonces[sender]
            address = to_checksum_address(
                Web3.keccak(bytes.fromhex(sender[2:]) + nonce.to_bytes(32, "big"))[12:]
            )
            is_uups = self.uups_creation_code and bytecode.startswith(self.uups_creation_code)
            if is_uups:
                implementation = _word_address(bytecode[-64:-32])
                if implementation not in self._code:
                    raise TransactionReverted("ERC1967: new implementation is not a contract")
                self._storage[address][EIP1967_IMPLEMENTATION_SLOT] = bytecode[-64:-32]
                self._owners[address] = _word_address(bytecode[-32:])
            elif self.proxy_creation_code and bytecode.startswith(self.proxy_creation_code):
                self._storage[address][EIP1967_ADMIN_SLOT] = bytecode[-32:]
            self._code[address] = bytecode
            self.published.append(bytecode)
            receipt = self._mine(sender, bytecode, contract_address=address)
        return receipt.tx_hash

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        self._check_online()
        with self._lock:
            remaining = self._pending_polls.get(tx_hash, 0)
            if remaining > 0:
                self._pending_polls[tx_hash] = remaining - 1
                return None
            return self._receipts.get(tx_hash)

    def submit_transaction(self, call: ContractCall) -> Receipt:
        self._check_online()
        if self.latency:
            time.sleep(self.latency)
        with self._lock:
            to = to_checksum_address(call.to)
            sender = to_checksum_address(call.sender)
            if to not in self._code:
                raise TransactionReverted(f"No contract at {to}")

            storage = self._storage[to]
            admin = self._admin(to)
            if admin is None:
                raise TransactionReverted(f"{to} is not a proxy")
            if admin != sender:
                raise TransactionReverted("Ownable: caller is not the owner")

            implementation = to_checksum_address(call.args[0])
            if implementation not in self._code:
                raise TransactionReverted("ERC1967: new implementation is not a contract")

            current = storage.get(EIP1967_IMPLEMENTATION_SLOT, EMPTY_BYTES32)
            if call.method.name == "initialize":
                if current != EMPTY_BYTES32:
                    raise TransactionReverted("Initializable: contract is already initialized")
            elif call.method.name != "upgradeToAndCall":
                raise TransactionReverted(f"Unknown function {call.method.name}")

            storage[EIP1967_IMPLEMENTATION_SLOT] = _address_word(implementation)
            self.transactions.append(call)
            self.events.append({"event": "Upgraded", "proxy": to, "implementation": implementation})
            data = Web3.keccak(text=call.method.selector)[:4] + _address_word(implementation)
            return self._mine(sender, data)

    def _admin(self, address: ChecksumAddress) -> Optional[ChecksumAddress]:
        if address in self._owners:
            return self._owners[address]
        word = self._storage[address].get(EIP1967_ADMIN_SLOT, EMPTY_BYTES32)
        return None if word == EMPTY_BYTES32 else _word_address(word)

    def call(self, to: ChecksumAddress, method: MethodABI, args: typing.Tuple = ()) -> bytes:
        self._check_online()
        with self._lock:
            to = to_checksum_address(to)
            if method.name == "owner" and to in self._owners:
                return _address_word(self._owners[to])
            if to not in self._code:
                # calls to an account without code succeed with empty return data
                return b""
            raise TransactionReverted(f"{to} does not implement {method.selector}")

    def read_storage(self, address: ChecksumAddress, slot: int) -> bytes:
        self._check_online()
        with self._lock:
            return self._storage[to_checksum_address(address)].get(slot, EMPTY_BYTES32)

    def get_code(self, address: ChecksumAddress) -> bytes:
        self._check_online()
        with self._lock:
            return self._code.get(to_checksum_address(address), b"")
