"""Minimal demonstration of the swap-intent chat client."""

from swap_advisor import create_chat_client

if __name__ == "__main__":
    question = "把 1 ETH 兑换成 USDC，滑点 1%，请给出最优交易参数"
    client = create_chat_client()
    print("User:", question)
    print("Agent: ", end="", flush=True)
    reply = client.send(question, "demo_user", on_fragment=lambda s: print(s, end="", flush=True))
    print()
    print("Full reply length:", len(reply))
