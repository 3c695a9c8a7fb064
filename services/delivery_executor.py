# services/delivery_executor.py
"""
Delivery Executor - submits one ERC-1155 transfer and waits for it.

Outcomes:
- TransferReceipt(confirmed=True): mined with status 1
- SubmissionFailed: signing failed, the node was never reached, the node
  answered with an explicit rejection, or the receipt shows a revert; no
  asset moved
- ConfirmationTimeout: the transaction may still land (any other broadcast
  failure, or no receipt in time); carries its hash

No retries happen here; a transfer whose fate is unknown is never
resubmitted.
"""
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from urllib3.exceptions import NewConnectionError
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception, Web3RPCError

from utils.log import get_logger
from .chain import ChainClient
from .errors import ConfirmationTimeout, SubmissionFailed, TransferReverted

logger = get_logger("delivery_executor")


@dataclass(frozen=True)
class TransferReceipt:
     transfer_id: str
     confirmed: bool
     block_number: Optional[int] = None


def _never_sent(exc: BaseException) -> bool:
     """True when the error chain shows the connection to the node never opened."""
     seen = set()
     pending = [exc]
     while pending:
          current = pending.pop()
          if current is None or id(current) in seen:
               continue
          seen.add(id(current))
          if isinstance(current, (requests.ConnectTimeout, NewConnectionError)):
               return True
          # requests wraps urllib3's MaxRetryError, which keeps the cause in .reason
          pending.extend(arg for arg in current.args if isinstance(arg, BaseException))
          reason = getattr(current, "reason", None)
          if isinstance(reason, BaseException):
               pending.append(reason)
          pending.extend((current.__cause__, current.__context__))
     return False


class DeliveryExecutor:

     def __init__(self, chain: ChainClient, confirmation_timeout: float = 120.0):
          self.chain = chain
          self.confirmation_timeout = confirmation_timeout
          # sign + broadcast share the sender nonce; confirmation waits do not
          self._submit_lock = threading.Lock()

     def _submit(self, sender: str, recipient: str, asset_id: int, units: int) -> str:
          with self._submit_lock:
               try:
                    signed = self.chain.sign_transfer(sender, recipient, asset_id, units)
               except (Web3Exception, requests.RequestException, ValueError) as e:
                    raise SubmissionFailed(f"Could not build or sign transfer: {e}") from e

               try:
                    self.chain.broadcast(signed)
               except (Web3RPCError, ContractLogicError) as e:
                    raise SubmissionFailed(
                         f"Transfer rejected by node: {e}", transfer_id=signed.transfer_id
                    ) from e
               except requests.RequestException as e:
                    if _never_sent(e):
                         raise SubmissionFailed(f"RPC unreachable: {e}") from e
                    # reset, dropped reply or read timeout: the node may hold it
                    logger.warning(
                         "Broadcast outcome unknown",
                         extra={"transfer_id": signed.transfer_id, "error": str(e)},
                    )
                    raise ConfirmationTimeout(
                         f"Broadcast of {signed.transfer_id} interrupted: {e}", transfer_id=signed.transfer_id
                    ) from e
               except (Web3Exception, ValueError) as e:
                    raise ConfirmationTimeout(
                         f"Broadcast of {signed.transfer_id} failed ambiguously: {e}",
                         transfer_id=signed.transfer_id,
                    ) from e

          return signed.transfer_id

     def transfer(
          self,
          sender: str,
          recipient: str,
          asset_id: int,
          units: int,
          on_submitted: Optional[Callable[[str], None]] = None,
     ) -> TransferReceipt:
          """
          Submit exactly one transfer of `units` of asset_id and wait for it.

          Args:
               on_submitted: called with the transaction hash once the node
                    has accepted it, before the confirmation wait
          """
          logger.info(
               "Attempting NFT transfer",
               extra={"sender": sender, "recipient": recipient, "asset_id": asset_id, "units": units},
          )
          transfer_id = self._submit(sender, recipient, asset_id, units)
          logger.info("Transaction sent", extra={"transfer_id": transfer_id})
          if on_submitted is not None:
               on_submitted(transfer_id)

          try:
               receipt = self.chain.wait_for_receipt(transfer_id, self.confirmation_timeout)
          except TimeExhausted as e:
               raise ConfirmationTimeout(
                    f"Transfer {transfer_id} not confirmed within {self.confirmation_timeout}s",
                    transfer_id=transfer_id,
               ) from e
          except (Web3Exception, requests.RequestException, ValueError) as e:
               raise ConfirmationTimeout(
                    f"Lost track of transfer {transfer_id}: {e}", transfer_id=transfer_id
               ) from e

          if receipt.get("status") != 1:
               logger.error("Transaction reverted", extra={"transfer_id": transfer_id})
               raise TransferReverted(f"Transfer {transfer_id} reverted", transfer_id=transfer_id)

          logger.info("Transaction confirmed", extra={"transfer_id": transfer_id})
          return TransferReceipt(
               transfer_id=transfer_id,
               confirmed=True,
               block_number=receipt.get("blockNumber"),
          )

     def lookup(self, transfer_id: str) -> Optional[TransferReceipt]:
          """
          Re-check a previously submitted transfer without waiting.

          Returns:
               TransferReceipt(confirmed=True) if mined successfully,
               TransferReceipt(confirmed=False) if mined and reverted,
               None while the outcome is still unknown
          """
          try:
               receipt = self.chain.get_receipt(transfer_id)
          except (Web3Exception, requests.RequestException, ValueError) as e:
               logger.warning("Receipt lookup failed", extra={"transfer_id": transfer_id, "error": str(e)})
               return None
          if receipt is None:
               return None
          return TransferReceipt(
               transfer_id=transfer_id,
               confirmed=receipt.get("status") == 1,
               block_number=receipt.get("blockNumber"),
          )
