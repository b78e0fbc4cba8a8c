"""JobEscrow contract ABI.

The contract holds native currency per ``bytes32 jobId``. Only the external
surface the coordinator calls is described here.
"""

JOB_ESCROW_ABI = [
    {
        "type": "function",
        "name": "deposit",
        "stateMutability": "payable",
        "inputs": [{"name": "jobId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "release",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "jobId", "type": "bytes32"},
            {"name": "provider", "type": "address"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "cancel",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "jobId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "escrowOf",
        "stateMutability": "view",
        "inputs": [{"name": "jobId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "requesterOf",
        "stateMutability": "view",
        "inputs": [{"name": "jobId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "event",
        "name": "JobFunded",
        "anonymous": False,
        "inputs": [
            {"name": "jobId", "type": "bytes32", "indexed": True},
            {"name": "requester", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "JobReleased",
        "anonymous": False,
        "inputs": [
            {"name": "jobId", "type": "bytes32", "indexed": True},
            {"name": "provider", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "JobCanceled",
        "anonymous": False,
        "inputs": [
            {"name": "jobId", "type": "bytes32", "indexed": True},
            {"name": "requester", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
]

ZERO_ADDRESS = "0x" + "0" * 40
