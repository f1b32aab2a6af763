# Minimal UnifiedVault ABI: the two redemption entry points.
UNIFIED_VAULT_ABI = [
    {
        "name": "receiveBridgedUSDC",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "message", "type": "bytes"},
            {"name": "attestation", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "name": "receiveAttested",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "nonce", "type": "uint256"},
            {"name": "sourceChainId", "type": "uint256"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
    },
]
