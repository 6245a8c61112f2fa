from enum import StrEnum


class BitcoinNetwork(StrEnum):
    Mainnet = "mainnet"
    Testnet = "testnet"


ESPLORA_API_URLS = {
    BitcoinNetwork.Mainnet: "https://blockstream.info/api",
    BitcoinNetwork.Testnet: "https://blockstream.info/testnet/api",
}

UNISAT_API_URLS = {
    BitcoinNetwork.Mainnet: "https://open-api.unisat.io",
    BitcoinNetwork.Testnet: "https://open-api-testnet.unisat.io",
}

ORDINALS_EXPLORER_URL = "https://ordinals.com/inscription"

SATS_PER_BTC = 100_000_000
DUST_OUTPUT_VALUE = 546  # sats, standard inscription output
DEFAULT_REQUEST_TIMEOUT = 10.0  # seconds
