"""
ABI of the external proof registry contract.

The contract is not owned by this service. Its interface is fixed:

    authenticateVideo(string videoHash)
        reverts with "Already authenticated" if the hash is registered
    verifyVideo(string videoHash) view returns (address creator, uint256 timestamp)
        a zero timestamp means the hash is not registered
    event VideoAuthenticated(string videoHash, address indexed creator, uint256 timestamp)
"""

AUTHENTICATE_FUNCTION = "authenticateVideo"
VERIFY_FUNCTION = "verifyVideo"
AUTHENTICATED_EVENT = "VideoAuthenticated"

REGISTRY_ABI = [
    {
        "type": "function",
        "name": AUTHENTICATE_FUNCTION,
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "videoHash", "type": "string", "internalType": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": VERIFY_FUNCTION,
        "stateMutability": "view",
        "inputs": [
            {"name": "videoHash", "type": "string", "internalType": "string"},
        ],
        "outputs": [
            {"name": "creator", "type": "address", "internalType": "address"},
            {"name": "timestamp", "type": "uint256", "internalType": "uint256"},
        ],
    },
    {
        "type": "event",
        "name": AUTHENTICATED_EVENT,
        "anonymous": False,
        "inputs": [
            {
                "name": "videoHash",
                "type": "string",
                "indexed": False,
                "internalType": "string",
            },
            {
                "name": "creator",
                "type": "address",
                "indexed": True,
                "internalType": "address",
            },
            {
                "name": "timestamp",
                "type": "uint256",
                "indexed": False,
                "internalType": "uint256",
            },
        ],
    },
]
