# services/factory.py
"""
Builds the pipeline and its collaborators from Settings.

Each component takes its backend explicitly so tests can hand in fakes
for the Pi session and the chain client.
"""
from dataclasses import dataclass
from typing import Optional

import requests
from sqlalchemy.orm import sessionmaker

from config import Settings
from .cap_checker import CapChecker
from .chain import ChainClient
from .delivery_executor import DeliveryExecutor
from .delivery_pipeline import DeliveryPipeline
from .payment_verifier import PaymentVerifier, PiPaymentsClient
from .supply_ledger import SupplyLedger


@dataclass
class Services:
     pi_client: PiPaymentsClient
     ledger: SupplyLedger
     pipeline: DeliveryPipeline


def build_services(
     settings: Settings,
     session_factory: sessionmaker,
     chain: Optional[ChainClient] = None,
     http_session: Optional[requests.Session] = None,
) -> Services:
     pi_client = PiPaymentsClient(
          settings.pi_payments_url,
          settings.pi_api_key,
          timeout=settings.pi_api_timeout,
          session=http_session,
     )
     if chain is None:
          chain = ChainClient(
               settings.polygon_rpc_url,
               settings.nft_contract_address,
               settings.sender_private_key,
               timeout=settings.rpc_timeout,
          )
     ledger = SupplyLedger(session_factory, settings.max_supply)
     pipeline = DeliveryPipeline(
          PaymentVerifier(pi_client),
          ledger,
          CapChecker(chain, settings.per_wallet_cap),
          DeliveryExecutor(chain, confirmation_timeout=settings.confirmation_timeout),
          session_factory,
          expected_payee=settings.pi_receiver_wallet,
          unit_price=settings.nft_price_pi,
          sender=settings.nft_sender_address,
          asset_id=settings.nft_token_id,
          max_units_per_request=settings.max_per_tx,
          # a live worker records progress within one confirmation wait plus one RPC call
          claim_timeout=settings.confirmation_timeout + settings.rpc_timeout,
     )
     return Services(pi_client=pi_client, ledger=ledger, pipeline=pipeline)
