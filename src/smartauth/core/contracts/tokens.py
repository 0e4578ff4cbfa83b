"""
Token contracts used as session targets.

- ERC20Token: fungible token (transfer, approve, transferFrom, mint)
- ERC721Token: NFT with operator approvals (setApprovalForAll)
- InteractionProtocol: a protocol that pulls approved ERC20 tokens from
  the caller, used to exercise approve-then-interact session batches

Methods reachable through the ledger take ``caller`` (msg.sender) first.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Set, Tuple

from smartauth.core.abi import encode_call
from smartauth.core.crypto_utils import ZERO_ADDRESS, normalize_address
from smartauth.core.ledger import Contract, Ledger, external

logger = logging.getLogger(__name__)

UINT256_MAX = (1 << 256) - 1


class ERC20Token(Contract):
    """
    ERC20 Token Standard Implementation (EIP-20).

    Security features:
    - Zero address checks
    - Balance underflow prevention
    - Allowance validation
    """

    def __init__(
        self,
        ledger: Ledger,
        name: str = "Mock Token",
        symbol: str = "MOCK",
        decimals: int = 18,
        owner: str = ZERO_ADDRESS,
        address: Optional[str] = None,
    ) -> None:
        super().__init__(ledger, address)
        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.owner = normalize_address(owner)
        self.total_supply = 0
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[Tuple[str, str], int] = {}

    # ==================== Views ====================

    def balance_of(self, account: str) -> int:
        return self.balances.get(normalize_address(account), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((normalize_address(owner), normalize_address(spender)), 0)

    # ==================== Mutations ====================

    @external("transfer(address,uint256)")
    def transfer(self, caller: str, recipient: str, amount: int) -> bool:
        """
        Transfer tokens from caller to recipient.

        Raises:
            ExecutionReverted: If transfer fails
        """
        self._move(normalize_address(caller), normalize_address(recipient), amount)
        return True

    @external("approve(address,uint256)")
    def approve(self, caller: str, spender: str, amount: int) -> bool:
        owner = normalize_address(caller)
        spender = normalize_address(spender)
        self._require(spender != ZERO_ADDRESS, "ERC20: approve to the zero address")
        self.allowances[(owner, spender)] = amount
        self._emit("Approval", owner=owner, spender=spender, value=amount)
        return True

    @external("transferFrom(address,address,uint256)")
    def transfer_from(self, caller: str, sender: str, recipient: str, amount: int) -> bool:
        spender = normalize_address(caller)
        sender = normalize_address(sender)
        current = self.allowances.get((sender, spender), 0)
        self._require(current >= amount, "ERC20: insufficient allowance")
        if current != UINT256_MAX:
            self.allowances[(sender, spender)] = current - amount
        self._move(sender, normalize_address(recipient), amount)
        return True

    @external("mint(address,uint256)")
    def mint(self, caller: str, to: str, amount: int) -> bool:
        """Open mint: this token exists to fund test and demo accounts."""
        to = normalize_address(to)
        self._require(to != ZERO_ADDRESS, "ERC20: mint to the zero address")
        self.total_supply += amount
        self.balances[to] = self.balances.get(to, 0) + amount
        self._emit("Transfer", sender=ZERO_ADDRESS, recipient=to, value=amount)
        return True

    def _move(self, sender: str, recipient: str, amount: int) -> None:
        self._require(recipient != ZERO_ADDRESS, "ERC20: transfer to the zero address")
        balance = self.balances.get(sender, 0)
        self._require(balance >= amount, "ERC20: transfer amount exceeds balance")
        self.balances[sender] = balance - amount
        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        self._emit("Transfer", sender=sender, recipient=recipient, value=amount)
        logger.debug(
            "ERC20 transfer",
            extra={
                "event": "erc20.transfer",
                "token": self.symbol,
                "from": sender,
                "to": recipient,
                "amount": amount,
            },
        )


class ERC721Token(Contract):
    """Minimal ERC721 with ownership and operator approvals."""

    def __init__(
        self,
        ledger: Ledger,
        name: str = "Mock NFT",
        symbol: str = "MNFT",
        address: Optional[str] = None,
    ) -> None:
        super().__init__(ledger, address)
        self.name = name
        self.symbol = symbol
        self.owners: Dict[int, str] = {}
        self.operator_approvals: Set[Tuple[str, str]] = set()

    def owner_of(self, token_id: int) -> str:
        owner = self.owners.get(token_id)
        self._require(owner is not None, "ERC721: invalid token ID")
        return owner  # type: ignore[return-value]

    def balance_of(self, account: str) -> int:
        account = normalize_address(account)
        return sum(1 for owner in self.owners.values() if owner == account)

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        return (normalize_address(owner), normalize_address(operator)) in self.operator_approvals

    @external("mint(address,uint256)")
    def mint(self, caller: str, to: str, token_id: int) -> bool:
        to = normalize_address(to)
        self._require(to != ZERO_ADDRESS, "ERC721: mint to the zero address")
        self._require(token_id not in self.owners, "ERC721: token already minted")
        self.owners[token_id] = to
        self._emit("Transfer", sender=ZERO_ADDRESS, recipient=to, token_id=token_id)
        return True

    @external("setApprovalForAll(address,bool)")
    def set_approval_for_all(self, caller: str, operator: str, approved: bool) -> None:
        owner = normalize_address(caller)
        operator = normalize_address(operator)
        self._require(owner != operator, "ERC721: approve to caller")
        if approved:
            self.operator_approvals.add((owner, operator))
        else:
            self.operator_approvals.discard((owner, operator))
        self._emit("ApprovalForAll", owner=owner, operator=operator, approved=approved)

    @external("transferFrom(address,address,uint256)")
    def transfer_from(self, caller: str, sender: str, recipient: str, token_id: int) -> None:
        caller = normalize_address(caller)
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        owner = self.owner_of(token_id)
        self._require(owner == sender, "ERC721: transfer from incorrect owner")
        self._require(
            caller == owner or (owner, caller) in self.operator_approvals,
            "ERC721: caller is not token owner or approved",
        )
        self._require(recipient != ZERO_ADDRESS, "ERC721: transfer to the zero address")
        self.owners[token_id] = recipient
        self._emit("Transfer", sender=sender, recipient=recipient, token_id=token_id)


class InteractionProtocol(Contract):
    """Protocol that takes ERC20 deposits by pulling an approved amount."""

    def __init__(self, ledger: Ledger, address: Optional[str] = None) -> None:
        super().__init__(ledger, address)
        self.deposits: Dict[Tuple[str, str], int] = {}

    def deposit_of(self, token: str, account: str) -> int:
        return self.deposits.get((normalize_address(token), normalize_address(account)), 0)

    @external("interact(address,uint256)")
    def interact(self, caller: str, token: str, amount: int) -> None:
        caller = normalize_address(caller)
        token = normalize_address(token)
        self._call(
            token,
            0,
            encode_call(
                "transferFrom(address,address,uint256)", [caller, self.address, amount]
            ),
        )
        key = (token, caller)
        self.deposits[key] = self.deposits.get(key, 0) + amount
        self._emit("Interacted", account=caller, token=token, amount=amount)
