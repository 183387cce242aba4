"""
Stablecoin rail for ERC-20 tokens on an EVM network (USDC on Base by default).

The client's standing authorization is an on-chain allowance granted to the
platform spender. A charge pulls the milestone amount with ``transferFrom``
into the treasury; a refund sends it back with ``transfer``.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from loguru import logger
from web3 import HTTPProvider, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from .base import ChargeResult, DeclineCategory, PaymentRail, RefundResult

ERC20_ABI = [
    {
        'inputs': [
            {'internalType': 'address', 'name': 'from', 'type': 'address'},
            {'internalType': 'address', 'name': 'to', 'type': 'address'},
            {'internalType': 'uint256', 'name': 'value', 'type': 'uint256'},
        ],
        'name': 'transferFrom',
        'outputs': [{'internalType': 'bool', 'name': '', 'type': 'bool'}],
        'stateMutability': 'nonpayable',
        'type': 'function',
    },
    {
        'inputs': [
            {'internalType': 'address', 'name': 'to', 'type': 'address'},
            {'internalType': 'uint256', 'name': 'value', 'type': 'uint256'},
        ],
        'name': 'transfer',
        'outputs': [{'internalType': 'bool', 'name': '', 'type': 'bool'}],
        'stateMutability': 'nonpayable',
        'type': 'function',
    },
    {
        'inputs': [
            {'internalType': 'address', 'name': 'owner', 'type': 'address'},
            {'internalType': 'address', 'name': 'spender', 'type': 'address'},
        ],
        'name': 'allowance',
        'outputs': [{'internalType': 'uint256', 'name': '', 'type': 'uint256'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [{'internalType': 'address', 'name': 'account', 'type': 'address'}],
        'name': 'balanceOf',
        'outputs': [{'internalType': 'uint256', 'name': '', 'type': 'uint256'}],
        'stateMutability': 'view',
        'type': 'function',
    },
]


class StablecoinSubmissionError(Exception):
    """Raised when a token transaction cannot be submitted or confirmed."""


class StablecoinPendingError(StablecoinSubmissionError):
    """The transaction was broadcast but no receipt arrived in time."""

    def __init__(self, tx_hash: str):
        super().__init__(f'Timed out waiting for receipt of {tx_hash}')
        self.tx_hash = tx_hash


class StablecoinRail(PaymentRail):
    """Handler for ERC-20 stablecoin payments."""

    TOKEN_DECIMALS = 6

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        from django.conf import settings
        self.rpc_url = config.get('rpc_url') or getattr(
            settings, 'MILESTONEPAY_STABLECOIN_RPC_URL', '')
        self.signer_private_key = config.get('signer_private_key') or getattr(
            settings, 'MILESTONEPAY_STABLECOIN_SIGNER_PRIVATE_KEY', '')
        self.token_contract = config.get('token_contract') or getattr(
            settings, 'MILESTONEPAY_STABLECOIN_TOKEN_CONTRACT', '')
        self.treasury_address = config.get('treasury_address') or getattr(
            settings, 'MILESTONEPAY_STABLECOIN_TREASURY_ADDRESS', '')
        self.chain_id = config.get('chain_id') or getattr(
            settings, 'MILESTONEPAY_STABLECOIN_CHAIN_ID', 8453)
        self.gas_limit = config.get('gas_limit') or getattr(
            settings, 'MILESTONEPAY_STABLECOIN_GAS_LIMIT', 120000)
        self.tx_timeout_seconds = config.get('tx_timeout_seconds') or getattr(
            settings, 'MILESTONEPAY_STABLECOIN_TX_TIMEOUT_SECONDS', 120)
        self.token_decimals = config.get('token_decimals', self.TOKEN_DECIMALS)

    @property
    def rail_name(self) -> str:
        return 'stablecoin'

    def validate_reference(self, authorization_ref: str) -> bool:
        """Validate the payer's EVM address."""
        try:
            Web3.to_checksum_address(authorization_ref)
            return True
        except (ValueError, TypeError):
            return False

    def to_base_units(self, amount: Decimal) -> int:
        return int(Decimal(amount) * (Decimal(10) ** self.token_decimals))

    def from_base_units(self, value: int) -> Decimal:
        return (Decimal(int(value)) / (Decimal(10) ** self.token_decimals)).quantize(Decimal('0.01'))

    def _missing_config(self) -> Optional[str]:
        if not self.rpc_url:
            return 'RPC URL not configured'
        if not self.signer_private_key:
            return 'Signer private key not configured'
        if not self.token_contract:
            return 'Token contract not configured'
        return None

    def _connect(self) -> Web3:
        web3 = Web3(HTTPProvider(self.rpc_url, request_kwargs={'timeout': self.tx_timeout_seconds}))
        if not web3.is_connected():
            raise StablecoinSubmissionError('Unable to connect to RPC endpoint')
        return web3

    def _token(self, web3: Web3):
        return web3.eth.contract(
            address=Web3.to_checksum_address(self.token_contract),
            abi=ERC20_ABI,
        )

    def _submit(self, web3: Web3, function_call) -> str:
        account = web3.eth.account.from_key(self.signer_private_key)
        signer_address = Web3.to_checksum_address(account.address)

        try:
            estimated_gas = function_call.estimate_gas({'from': signer_address})
        except ContractLogicError:
            raise
        except Exception as exc:  # pragma: no cover - estimation often fails against test nodes
            logger.debug('Gas estimation failed, falling back to configured gas limit: {}', exc)
            estimated_gas = self.gas_limit

        tx_params = {
            'chainId': int(self.chain_id),
            'from': signer_address,
            'nonce': web3.eth.get_transaction_count(signer_address),
            'gas': max(estimated_gas, self.gas_limit),
            'gasPrice': web3.eth.gas_price,
        }

        transaction = function_call.build_transaction(tx_params)
        signed = web3.eth.account.sign_transaction(transaction, private_key=self.signer_private_key)

        raw_tx = getattr(signed, 'raw_transaction', None)
        if raw_tx is None:
            raw_tx = getattr(signed, 'rawTransaction', None)
        if raw_tx is None:
            raise StablecoinSubmissionError('Signer returned unexpected transaction encoding')

        tx_hash = web3.eth.send_raw_transaction(raw_tx)
        logger.debug('Submitted stablecoin transaction: {}', tx_hash.hex())

        try:
            receipt = web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout_seconds)
        except Exception as exc:
            raise StablecoinPendingError(tx_hash.hex()) from exc

        if receipt.status != 1:
            raise StablecoinSubmissionError('Transaction reverted on-chain')

        return tx_hash.hex()

    def charge(
        self,
        amount: Decimal,
        authorization_ref: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        problem = self._missing_config()
        if problem is None and not self.treasury_address:
            problem = 'Treasury address not configured'
        if problem:
            return ChargeResult(success=False, error_reason=problem,
                                decline_category=DeclineCategory.PROCESSOR_ERROR)

        if not self.validate_reference(authorization_ref):
            return ChargeResult(success=False, error_reason='Invalid payer address',
                                decline_category=DeclineCategory.INSUFFICIENT_AUTHORIZATION)

        value = self.to_base_units(amount)
        try:
            web3 = self._connect()
            token = self._token(web3)
            payer = Web3.to_checksum_address(authorization_ref)
            spender = Web3.to_checksum_address(
                web3.eth.account.from_key(self.signer_private_key).address)

            allowance = token.functions.allowance(payer, spender).call()
            if allowance < value:
                return ChargeResult(
                    success=False,
                    error_reason=f'Token allowance too low: {allowance} < {value}',
                    decline_category=DeclineCategory.INSUFFICIENT_AUTHORIZATION,
                )

            balance = token.functions.balanceOf(payer).call()
            if balance < value:
                return ChargeResult(
                    success=False,
                    error_reason='Insufficient token balance',
                    decline_category=DeclineCategory.DECLINED,
                )

            tx_hash = self._submit(
                web3,
                token.functions.transferFrom(
                    payer, Web3.to_checksum_address(self.treasury_address), value),
            )
        except ContractLogicError as exc:
            logger.error('stablecoin transferFrom reverted: {}', exc)
            return ChargeResult(success=False, error_reason='Transfer reverted on-chain',
                                decline_category=DeclineCategory.DECLINED)
        except StablecoinPendingError as exc:
            logger.warning('stablecoin charge {} broadcast without receipt: {}', idempotency_key, exc.tx_hash)
            return ChargeResult(success=False, charge_id=exc.tx_hash,
                                error_reason='Transfer not confirmed yet',
                                decline_category=DeclineCategory.PROCESSOR_ERROR,
                                outcome_unknown=True)
        except Exception as exc:
            logger.error('stablecoin charge failed ({}): {}', idempotency_key, exc)
            return ChargeResult(success=False, error_reason=f'Stablecoin settlement failed: {exc}',
                                decline_category=DeclineCategory.PROCESSOR_ERROR)

        return ChargeResult(
            success=True,
            charge_id=tx_hash,
            settled_amount=self.from_base_units(value),
            details={'chain_id': int(self.chain_id), 'payer': authorization_ref},
        )

    def check_charge(
        self,
        amount: Decimal,
        authorization_ref: str,
        idempotency_key: str,
        charge_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """
        Look up the receipt of a broadcast transfer. Re-sending would pull the
        funds a second time, so without a transaction hash the outcome stays
        unknown.
        """
        if not charge_id:
            return ChargeResult(success=False, error_reason='No transaction to look up',
                                decline_category=DeclineCategory.PROCESSOR_ERROR,
                                outcome_unknown=True)
        try:
            web3 = self._connect()
            receipt = web3.eth.get_transaction_receipt(charge_id)
        except TransactionNotFound:
            return ChargeResult(success=False, charge_id=charge_id,
                                error_reason='Transfer not mined yet',
                                decline_category=DeclineCategory.PROCESSOR_ERROR,
                                outcome_unknown=True)
        except Exception as exc:
            logger.error('stablecoin receipt lookup for {} failed: {}', charge_id, exc)
            return ChargeResult(success=False, charge_id=charge_id,
                                error_reason=f'Receipt lookup failed: {exc}',
                                decline_category=DeclineCategory.PROCESSOR_ERROR,
                                outcome_unknown=True)

        if receipt.status != 1:
            return ChargeResult(success=False, charge_id=charge_id,
                                error_reason='Transfer reverted on-chain',
                                decline_category=DeclineCategory.DECLINED)
        return ChargeResult(
            success=True,
            charge_id=charge_id,
            settled_amount=self.from_base_units(self.to_base_units(amount)),
            details={'chain_id': int(self.chain_id), 'payer': authorization_ref},
        )

    def refund(
        self,
        charge_id: str,
        amount: Decimal,
        authorization_ref: str,
        idempotency_key: str,
    ) -> RefundResult:
        problem = self._missing_config()
        if problem:
            return RefundResult(success=False, error_reason=problem)
        logger.info('stablecoin refund {} for {}', idempotency_key, charge_id)

        value = self.to_base_units(amount)
        try:
            web3 = self._connect()
            token = self._token(web3)
            tx_hash = self._submit(
                web3,
                token.functions.transfer(Web3.to_checksum_address(authorization_ref), value),
            )
        except Exception as exc:
            logger.error('stablecoin refund for {} failed: {}', charge_id, exc)
            return RefundResult(success=False, error_reason=f'Stablecoin refund failed: {exc}')

        return RefundResult(
            success=True,
            refund_id=tx_hash,
            amount=self.from_base_units(value),
            details={'original_charge': charge_id},
        )
