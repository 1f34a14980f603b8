import asyncio
import os

from dotenv import load_dotenv

from x402_mcp_proxy.client import PaymentClient
from x402_mcp_proxy.signers import EvmPrivateKeySigner
from x402_mcp_proxy.upstream import UpstreamConnection

load_dotenv()

PRIVATE_KEY = os.getenv("PRIVATE_KEY")
if not PRIVATE_KEY or not PRIVATE_KEY.startswith("0x"):
    raise SystemExit("PRIVATE_KEY env var must be set and start with 0x")

PROXY_URL = os.getenv("PROXY_URL", "http://localhost:3003/mcp/demo")
NETWORK = os.getenv("EVM_NETWORK", "base-sepolia")


async def main():
    async with UpstreamConnection(PROXY_URL, client_name="demo-client") as upstream:
        tools = await upstream.list_tools()
        print("Tools:", [tool["name"] for tool in tools])

        client = PaymentClient(upstream.call_tool, EvmPrivateKeySigner(PRIVATE_KEY), NETWORK)
        print("Free:", await client.call_tool("echo", {"text": "hello"}))
        print("Paid:", await client.call_tool("premium_data"))


if __name__ == "__main__":
    asyncio.run(main())
