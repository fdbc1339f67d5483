"""
Quorum evaluation.

Pure function deciding whether a required-wallet-set policy is satisfied
by the wallets currently in range.
"""

from typing import Iterable

from .models import QuorumPolicy, QuorumStatus


def evaluate(policy: QuorumPolicy, wallets_in_range: Iterable[str]) -> QuorumStatus:
    """
    쿼럼 정책을 평가합니다.

    Args:
        policy: 쿼럼 정책
        wallets_in_range: 현재 범위 안에 있는 지갑 공개키

    Returns:
        QuorumStatus (met, in_range, out_of_range, message)
    """
    required = policy.required_wallet_public_keys
    if not required:
        return QuorumStatus(met=True, minimum_required=0, message="None required")

    present = frozenset(wallets_in_range)
    in_range = required & present
    out_of_range = required - present

    if policy.quorum_type == "all":
        met = required <= present
        minimum = len(required)
    elif policy.quorum_type == "exact":
        minimum = policy.minimum_wallet_count
        met = len(in_range) == minimum
    else:
        minimum = policy.minimum_wallet_count
        met = len(in_range) >= minimum

    if met:
        message = f"Quorum met: {len(in_range)} of {minimum} required wallets are in range"
    else:
        missing = ", ".join(sorted(out_of_range))
        message = (
            f"Quorum not met: {len(in_range)} of {minimum} required wallets are in range. "
            f"Missing: {missing}"
        )

    return QuorumStatus(met=met, in_range=in_range, out_of_range=out_of_range,
                        minimum_required=minimum, message=message)
