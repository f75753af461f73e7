import os
import sys
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from eth_account import Account
from hexbytes import HexBytes

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from utils.tokens import Token  # noqa: E402

PRIVATE_KEY = '0x' + '1' * 64
OWNER = Account.from_key(PRIVATE_KEY).address
ROUTER = '0x' + 'ab' * 20
WETH_ADDRESS = '0x' + '01' * 20
DAI_ADDRESS = '0x' + '02' * 20
USDC_ADDRESS = '0x' + '03' * 20
NEAR_ADDRESS = '0x' + '04' * 20
CHAIN_ID = 42161
TX_HASH = HexBytes('0x' + 'aa' * 32)


@pytest.fixture
def env():
    return {
        'WALLET_ADDRESS': OWNER,
        'WALLET_SECRET': PRIVATE_KEY,
        'CHAIN_ID': str(CHAIN_ID),
        'RPC_URL': 'http://localhost:8545',
        'UNIVERSAL_ROUTER_ADDRESS': ROUTER,
        'WETH_ADDRESS': WETH_ADDRESS,
        'DAI_ADDRESS': DAI_ADDRESS,
    }


@pytest.fixture
def weth():
    return Token(CHAIN_ID, WETH_ADDRESS, 18, 'WETH', 'Wrapped Ether')


@pytest.fixture
def dai():
    return Token(CHAIN_ID, DAI_ADDRESS, 18, 'DAI', 'Dai Stablecoin')


@pytest.fixture
def usdc():
    return Token(CHAIN_ID, USDC_ADDRESS, 6, 'USDC', 'USD Coin')


@pytest.fixture
def near():
    return Token(CHAIN_ID, NEAR_ADDRESS, 18, 'NEAR', 'NEAR Protocol')


@pytest.fixture
def ledger():
    """Ledger double with a healthy chain: code at the router, confirmed txs."""
    led = MagicMock()
    led.signer.address = OWNER
    led.get_balance.return_value = 10**18
    led.get_allowance.return_value = 0
    led.get_permit2_nonce.return_value = 0
    led.has_code.return_value = True
    led.estimate_gas.return_value = 150000
    led.send_transaction.return_value = TX_HASH
    led.send_approval.return_value = TX_HASH
    led.wait_for_confirmations.return_value = ({'status': 1, 'blockNumber': 100, 'gasUsed': 120000}, 2)
    return led


def amount(value):
    return Decimal(value)
