import time
import typing
from abc import ABC, abstractmethod
from typing import Any, NamedTuple, Optional

from ape import chain, networks
from ape.api import AccountAPI
from ape.api.networks import LOCAL_NETWORK_NAME
from ape.exceptions import (
    ContractLogicError,
    ProviderError,
    TransactionError,
    TransactionNotFoundError,
)
from ape.logging import logger
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from ethpm_types import MethodABI
from hexbytes import HexBytes
from web3 import Web3
from web3.auto import w3

from upgrades.errors import NetworkUnavailable


class NetworkError(Exception):
    """Raised by a network client when the network cannot be reached."""


class TransactionReverted(Exception):
    """Raised by a network client when a transaction is rejected by the chain."""


class ContractCall(NamedTuple):
    to: ChecksumAddress
    method: MethodABI
    args: typing.Tuple[Any, ...]
    sender: ChecksumAddress


class Receipt(NamedTuple):
    tx_hash: str
    block_number: int
    timestamp: int
    status: int = 1
    contract_address: Optional[ChecksumAddress] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class NetworkClient(ABC):
    """
    The operations the upgrade machinery needs from a chain.
    Implementations raise NetworkError for connectivity problems
    and TransactionReverted for rejected transactions.
    """

    @property
    @abstractmethod
    def chain_id(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def publish_bytecode(self, bytecode: bytes, sender: ChecksumAddress) -> str:
        """Broadcasts a contract creation transaction and returns its hash."""
        raise NotImplementedError

    @abstractmethod
    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        """Returns the receipt of a mined transaction, or None while it is pending."""
        raise NotImplementedError

    @abstractmethod
    def submit_transaction(self, call: ContractCall) -> Receipt:
        raise NotImplementedError

    @abstractmethod
    def call(self, to: ChecksumAddress, method: MethodABI, args: typing.Tuple = ()) -> bytes:
        """Executes a read-only call and returns the raw return data."""
        raise NotImplementedError

    @abstractmethod
    def read_storage(self, address: ChecksumAddress, slot: int) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def get_code(self, address: ChecksumAddress) -> bytes:
        raise NotImplementedError


def is_local_network() -> bool:
    network_name = networks.provider.network.name
    return network_name == LOCAL_NETWORK_NAME or network_name.endswith("-fork")


def _validate_call_args(method: MethodABI, args: typing.Sequence[Any]) -> typing.Dict[str, Any]:
    """Validates the transaction arguments against the function ABI."""
    if len(method.inputs) != len(args):
        raise ValueError(
            f"'{method.name}' expects {len(method.inputs)} arg(s), got {len(args)}"
        )
    named_args = dict()
    for arg, abi_input in zip(args, method.inputs):
        if not w3.is_encodable(abi_input.type, arg):
            raise ValueError(
                f"Argument '{abi_input.name}' of '{method.name}' is not encodable "
                f"as {abi_input.type}: {arg}"
            )
        named_args[abi_input.name] = arg
    return named_args


class ApeNetworkClient(NetworkClient):
    """
    NetworkClient backed by the connected ape provider and a single signing account.
    Without an account the client can only read chain state.
    """

    def __init__(self, account: Optional[AccountAPI] = None):
        self._account = account

    @property
    def chain_id(self) -> int:
        return networks.provider.chain_id

    def _check_sender(self, sender: ChecksumAddress) -> None:
        if self._account is None:
            raise ValueError("No account is available to sign transactions")
        if to_checksum_address(sender) != self._account.address:
            raise ValueError(
                f"Cannot sign for {sender}; the connected account is {self._account.address}"
            )

    def _receipt(self, receipt) -> Receipt:
        block = chain.blocks[receipt.block_number]
        return Receipt(
            tx_hash=receipt.txn_hash,
            block_number=receipt.block_number,
            timestamp=block.timestamp,
            status=int(receipt.status),
            contract_address=receipt.contract_address,
        )

    def publish_bytecode(self, bytecode: bytes, sender: ChecksumAddress) -> str:
        self._check_sender(sender)
        ecosystem = networks.provider.network.ecosystem
        txn = ecosystem.create_transaction(data=HexBytes(bytecode), sender=self._account.address)
        try:
            receipt = self._account.call(txn)
        except ContractLogicError as e:
            raise TransactionReverted(str(e)) from e
        except ProviderError as e:
            raise NetworkError(str(e)) from e
        except TransactionError as e:
            raise TransactionReverted(str(e)) from e
        return receipt.txn_hash

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            receipt = networks.provider.get_receipt(tx_hash, timeout=0)
        except TransactionNotFoundError:
            return None
        except ProviderError as e:
            raise NetworkError(str(e)) from e
        return self._receipt(receipt)

    def submit_transaction(self, call: ContractCall) -> Receipt:
        self._check_sender(call.sender)
        named_args = _validate_call_args(call.method, call.args)
        pretty_args = ", ".join(f"{k}={v}" for k, v in named_args.items())
        logger.info(f"Transacting [{call.to[:10]}].{call.method.name}({pretty_args})")

        ecosystem = networks.provider.network.ecosystem
        selector = Web3.keccak(text=call.method.selector)[:4]
        calldata = selector + ecosystem.encode_calldata(call.method, *call.args)
        txn = ecosystem.create_transaction(
            receiver=call.to, data=calldata, sender=self._account.address
        )
        try:
            receipt = self._account.call(txn)
        except ContractLogicError as e:
            raise TransactionReverted(str(e)) from e
        except ProviderError as e:
            raise NetworkError(str(e)) from e
        except TransactionError as e:
            raise TransactionReverted(str(e)) from e
        return self._receipt(receipt)

    def call(self, to: ChecksumAddress, method: MethodABI, args: typing.Tuple = ()) -> bytes:
        _validate_call_args(method, args)
        ecosystem = networks.provider.network.ecosystem
        selector = Web3.keccak(text=method.selector)[:4]
        txn = ecosystem.create_transaction(
            receiver=to, data=selector + ecosystem.encode_calldata(method, *args)
        )
        try:
            return bytes(networks.provider.send_call(txn))
        except ContractLogicError as e:
            raise TransactionReverted(str(e)) from e
        except ProviderError as e:
            raise NetworkError(str(e)) from e

    def read_storage(self, address: ChecksumAddress, slot: int) -> bytes:
        try:
            return bytes(networks.provider.get_storage(address, slot))
        except ProviderError as e:
            raise NetworkError(str(e)) from e

    def get_code(self, address: ChecksumAddress) -> bytes:
        try:
            return bytes(networks.provider.get_code(address))
        except ProviderError as e:
            raise NetworkError(str(e)) from e


def wait_for_receipt(
    network: NetworkClient,
    tx_hash: str,
    timeout: float,
    poll_interval: float,
    sleep: typing.Callable[[float], None] = time.sleep,
    component: Optional[str] = None,
) -> Receipt:
    """Polls for a transaction receipt; raises NetworkUnavailable once `timeout` elapses."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            receipt = network.get_receipt(tx_hash)
        except NetworkError as e:
            raise NetworkUnavailable(str(e), component=component) from e
        if receipt is not None:
            return receipt
        if time.monotonic() >= deadline:
            raise NetworkUnavailable(
                f"Transaction {tx_hash} was not confirmed within {timeout} seconds",
                component=component,
            )
        sleep(poll_interval)
