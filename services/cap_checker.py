# services/cap_checker.py
"""
Per-wallet cap enforcement against live on-chain holdings.

The holding is read from the chain at decision time and never cached:
unrelated deliveries can change it between requests. The check is not
locked against concurrent deliveries to the same wallet; the chain is the
final arbiter and this is a fast-fail guard.
"""
import requests
from web3.exceptions import Web3Exception

from utils.log import get_logger
from .chain import ChainClient
from .errors import CapExceeded, LedgerQueryError

logger = get_logger("cap_checker")


class CapChecker:

     def __init__(self, chain: ChainClient, cap: int):
          if cap < 1:
               raise ValueError("cap must be >= 1")
          self.chain = chain
          self.cap = cap

     def current_holding(self, recipient: str, asset_id: int) -> int:
          """
          Units of asset_id that recipient holds right now.

          Raises:
               LedgerQueryError: RPC unreachable or the contract call failed
          """
          try:
               holding = self.chain.balance_of(recipient, asset_id)
          except (Web3Exception, requests.RequestException, ValueError) as e:
               logger.error(
                    "Error fetching wallet NFT balance",
                    extra={"recipient": recipient, "asset_id": asset_id, "error": str(e)},
               )
               raise LedgerQueryError(f"Could not fetch wallet NFT balance: {e}") from e
          return int(holding)

     @staticmethod
     def check_cap(current: int, requested: int, cap: int) -> None:
          """Raises CapExceeded when current + requested would pass cap."""
          if current + requested > cap:
               raise CapExceeded(current=current, cap=cap, requested=requested)

     def enforce(self, recipient: str, asset_id: int, requested: int) -> int:
          """Live read plus cap check; returns the holding that was checked."""
          current = self.current_holding(recipient, asset_id)
          try:
               self.check_cap(current, requested, self.cap)
          except CapExceeded:
               logger.warning(
                    "Wallet NFT cap exceeded",
                    extra={"recipient": recipient, "current": current, "requested": requested, "cap": self.cap},
               )
               raise
          return current
