"""Minimal ABIs for the MINI token and the staking contract.

Only the entries this client calls are included.
"""

ERC20_ABI = [
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "allowance",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "approve",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "decimals",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "symbol",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
]

STAKING_ABI = [
    {
        "type": "function",
        "name": "stake",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "period", "type": "uint8"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "withdraw",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "stakeIndex", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "emergencyWithdraw",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "stakeIndex", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getUserStakingInfo",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "amount", "type": "uint128"},
                    {"name": "startTime", "type": "uint48"},
                    {"name": "endTime", "type": "uint48"},
                    {"name": "lockPeriod", "type": "uint8"},
                    {"name": "rewardMultiplier", "type": "uint256"},
                    {"name": "active", "type": "bool"},
                ],
            }
        ],
    },
    {
        "type": "function",
        "name": "totalDistributed",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "treasuryWallet",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "function",
        "name": "lockPeriods",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "multipliers",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "WithdrawDebug",
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": True, "name": "stakeId", "type": "uint256"},
            {"indexed": False, "name": "stakeAmount", "type": "uint256"},
            {"indexed": False, "name": "rewardMultiplier", "type": "uint256"},
            {"indexed": False, "name": "calculatedReward", "type": "uint256"},
            {"indexed": False, "name": "totalPayout", "type": "uint256"},
            {"indexed": False, "name": "contractBalance", "type": "uint256"},
        ],
    },
]
