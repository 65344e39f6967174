from adapters.token_registry import KNOWN_TOKENS
from domain.assets import Asset
from domain.base_types import Address, Chain, WalletId

MAIN_WALLET = WalletId("main")
SIDE_WALLET = WalletId("side")

USER_ETH = Address("0x1111111111111111111111111111111111111111")
USER_ETH_2 = Address("0x2222222222222222222222222222222222222222")
EXCHANGE_ETH = Address("0x9999999999999999999999999999999999999999")
ROUTER_ETH = Address("0x7a250d5630b4cf539739df2c5dacb4c659f2488d")

USER_BTC = Address("bc1quserxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx")
USER_BTC_CHANGE = Address("bc1qchangexxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx")
MERCHANT_BTC = Address("bc1qmerchantxxxxxxxxxxxxxxxxxxxxxxxxxxxxx")

USER_SOL = Address("UserSo1ana1111111111111111111111111111111111")
OTHER_SOL = Address("OtherSo1ana111111111111111111111111111111111")

BTC = Asset.native(Chain.BITCOIN)
ETH = Asset.native(Chain.ETHEREUM)
SOL = Asset.native(Chain.SOLANA)
USDC = next(token for token in KNOWN_TOKENS if token.chain == Chain.ETHEREUM and token.symbol == "USDC")
SOL_USDC = next(token for token in KNOWN_TOKENS if token.chain == Chain.SOLANA and token.symbol == "USDC")

ONE_ETH = 10**18
ONE_BTC = 10**8
ONE_USDC = 10**6
ONE_SOL = 10**9
