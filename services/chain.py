# services/chain.py
"""
Chain access for the ERC-1155 collection (Polygon JSON-RPC via web3).

Only the three calls the pipeline needs are exposed: balanceOf for the cap
check, sign + broadcast of safeTransferFrom, and receipt lookups. Signing
happens before broadcasting so the transaction hash is known even when the
broadcast itself times out.
"""
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound

ERC1155_ABI = [
     {
          "name": "safeTransferFrom",
          "type": "function",
          "stateMutability": "nonpayable",
          "inputs": [
               {"name": "from", "type": "address"},
               {"name": "to", "type": "address"},
               {"name": "id", "type": "uint256"},
               {"name": "amount", "type": "uint256"},
               {"name": "data", "type": "bytes"},
          ],
          "outputs": [],
     },
     {
          "name": "balanceOf",
          "type": "function",
          "stateMutability": "view",
          "inputs": [
               {"name": "account", "type": "address"},
               {"name": "id", "type": "uint256"},
          ],
          "outputs": [{"name": "", "type": "uint256"}],
     },
]


def is_valid_address(value: Any) -> bool:
     return isinstance(value, str) and Web3.is_address(value)


@dataclass(frozen=True)
class SignedTransfer:
     transfer_id: str  # 0x-prefixed transaction hash
     raw_transaction: bytes


class ChainClient:
     """web3 wrapper bound to one contract and one signing account."""

     def __init__(
          self,
          rpc_url: str,
          contract_address: str,
          private_key: str,
          timeout: float = 10.0,
          poll_latency: float = 2.0,
     ):
          self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
          self.contract = self.w3.eth.contract(
               address=Web3.to_checksum_address(contract_address),
               abi=ERC1155_ABI,
          )
          self.account = self.w3.eth.account.from_key(private_key)
          self.poll_latency = poll_latency

     def balance_of(self, owner: str, token_id: int) -> int:
          return int(
               self.contract.functions.balanceOf(Web3.to_checksum_address(owner), token_id).call()
          )

     def sign_transfer(self, sender: str, recipient: str, token_id: int, units: int) -> SignedTransfer:
          tx = self.contract.functions.safeTransferFrom(
               Web3.to_checksum_address(sender),
               Web3.to_checksum_address(recipient),
               token_id,
               units,
               b"",
          ).build_transaction({
               "from": self.account.address,
               "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
               "chainId": self.w3.eth.chain_id,
          })
          signed = self.account.sign_transaction(tx)
          return SignedTransfer(
               transfer_id=Web3.to_hex(signed.hash),
               raw_transaction=bytes(signed.raw_transaction),
          )

     def broadcast(self, signed: SignedTransfer) -> str:
          return Web3.to_hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))

     def wait_for_receipt(self, transfer_id: str, timeout: float) -> Mapping[str, Any]:
          """Raises web3.exceptions.TimeExhausted if not mined within timeout."""
          return self.w3.eth.wait_for_transaction_receipt(
               transfer_id, timeout=timeout, poll_latency=self.poll_latency
          )

     def get_receipt(self, transfer_id: str) -> Optional[Mapping[str, Any]]:
          try:
               return self.w3.eth.get_transaction_receipt(transfer_id)
          except TransactionNotFound:
               return None
