from decimal import Decimal

import pytest
from web3 import Web3

import config
from config import SwapConfig, parse_swap_requests
from utils.errors import ConfigurationError

from conftest import DAI_ADDRESS, OWNER, ROUTER, USDC_ADDRESS, WETH_ADDRESS


def test_from_env_reads_required_values(env):
    cfg = SwapConfig.from_env(env)

    assert cfg.wallet_address == OWNER
    assert cfg.chain_id == 42161
    assert cfg.rpc_url == 'http://localhost:8545'
    assert cfg.router_address == Web3.to_checksum_address(ROUTER)
    assert cfg.token_addresses == {
        'WETH': Web3.to_checksum_address(WETH_ADDRESS),
        'DAI': Web3.to_checksum_address(DAI_ADDRESS),
    }
    assert cfg.swap_requests == (('WETH', 'DAI', Decimal('0.1')),)
    assert cfg.permit2_address == config.PERMIT2_ADDRESS
    assert cfg.gas_reference_rpc_url == config.GAS_REFERENCE_RPC_URL
    assert cfg.confirmations == 2
    assert cfg.auto_confirm is False


def test_secret_not_in_repr(env):
    cfg = SwapConfig.from_env(env)
    assert env['WALLET_SECRET'] not in repr(cfg)


def test_optional_tokens_and_extra_rpcs(env):
    env.update({
        'USDC_ADDRESS': USDC_ADDRESS,
        'EXTRA_RPC_URLS': 'http://backup:8545, http://localhost:8545,',
        'SWAP_REQUESTS': 'weth:dai:0.1, WETH:USDC:0.25',
        'AUTO_CONFIRM': 'true',
        'CONFIRMATIONS': '3',
    })
    cfg = SwapConfig.from_env(env)

    assert 'USDC' in cfg.token_addresses
    assert 'NEAR' not in cfg.token_addresses
    assert cfg.rpc_urls == ('http://localhost:8545', 'http://backup:8545')
    assert cfg.swap_requests == (
        ('WETH', 'DAI', Decimal('0.1')),
        ('WETH', 'USDC', Decimal('0.25')),
    )
    assert cfg.auto_confirm is True
    assert cfg.confirmations == 3


@pytest.mark.parametrize('missing', [
    'WALLET_ADDRESS', 'WALLET_SECRET', 'CHAIN_ID', 'RPC_URL', 'UNIVERSAL_ROUTER_ADDRESS',
    'WETH_ADDRESS', 'DAI_ADDRESS',
])
def test_missing_required_value_is_fatal(env, missing):
    del env[missing]
    with pytest.raises(ConfigurationError, match=missing):
        SwapConfig.from_env(env)


def test_invalid_router_address(env):
    env['UNIVERSAL_ROUTER_ADDRESS'] = '0x1234'
    with pytest.raises(ConfigurationError, match='UNIVERSAL_ROUTER_ADDRESS'):
        SwapConfig.from_env(env)


def test_secret_must_control_wallet(env):
    env['WALLET_SECRET'] = '0x' + '2' * 64
    with pytest.raises(ConfigurationError, match='not WALLET_ADDRESS'):
        SwapConfig.from_env(env)


def test_bad_private_key(env):
    env['WALLET_SECRET'] = 'not-a-key'
    with pytest.raises(ConfigurationError, match='WALLET_SECRET'):
        SwapConfig.from_env(env)


def test_chain_id_must_be_integer(env):
    env['CHAIN_ID'] = 'arbitrum'
    with pytest.raises(ConfigurationError, match='CHAIN_ID'):
        SwapConfig.from_env(env)


def test_swap_request_with_unconfigured_token(env):
    env['SWAP_REQUESTS'] = 'WETH:NEAR:0.1'
    with pytest.raises(ConfigurationError, match='NEAR'):
        SwapConfig.from_env(env)


@pytest.mark.parametrize('raw', ['WETH:DAI', 'WETH:DAI:abc', 'WETH:DAI:0', 'WETH:DAI:-1', 'WETH:WETH:1', ' , '])
def test_parse_swap_requests_rejects(raw):
    with pytest.raises(ConfigurationError):
        parse_swap_requests(raw, known_symbols=['WETH', 'DAI'])


def test_amount_finer_than_token_decimals_is_a_configuration_error(env):
    from modules.permit2_swap import build_requests
    from utils.tokens import TokenRegistry

    env['USDC_ADDRESS'] = USDC_ADDRESS
    env['SWAP_REQUESTS'] = 'WETH:DAI:0.1,USDC:DAI:0.0000001'
    cfg = SwapConfig.from_env(env)

    with pytest.raises(ConfigurationError, match='more than 6 decimals for USDC'):
        build_requests(cfg, TokenRegistry.from_config(cfg))
