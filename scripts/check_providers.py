# scripts/check_providers.py
import asyncio
from pathlib import Path

from dotenv import load_dotenv

# Resolve .env relative to the repo root so this script works from any cwd.
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

import httpx  # noqa: E402

from llmrelay.config import Settings  # noqa: E402
from llmrelay.providers import (  # noqa: E402
    DEFAULT_MODEL_BY_PROVIDER,
    ChatCompletionRequest,
    ChatMessage,
    FailoverOrchestrator,
    Provider,
    RelayError,
    Success,
)


async def check_provider(client: httpx.AsyncClient, provider: Provider, credential: str, settings: Settings):
    """Send one short completion to *provider* alone, with no failover."""
    model = DEFAULT_MODEL_BY_PROVIDER[provider]
    print(f"\n🧪 {provider} ({model})...")

    relay = FailoverOrchestrator(
        client,
        {provider: credential},
        timeout=settings.upstream_timeout,
        account_id=settings.cloudflare_account_id,
        allow_local_providers=settings.allow_local_providers,
        priority=(provider,),
    )
    request = ChatCompletionRequest(
        model=model,
        messages=(ChatMessage(role="user", content="Say 'Hello from the relay!' in one sentence."),),
        max_tokens=32,
    )

    try:
        result = await relay.complete(request)
    except RelayError as e:
        print(f"   ❌ {type(e).__name__}: {e.message}")
        return

    if isinstance(result, Success):
        content = result.payload["choices"][0]["message"]["content"]
        print(f"   Response: {content.strip()}")
        print(f"   Tokens: {result.payload.get('usage')}")
        print(f"   ✅ {provider} working!")
    else:
        print(f"   ❌ HTTP {result.status_code}: {result.body[:200]!r}")


async def main():
    settings = Settings()
    credentials = settings.provider_credentials()

    print("=" * 60)
    print("Provider Connectivity Check")
    print("=" * 60)

    async with httpx.AsyncClient() as client:
        for provider in Provider:
            credential = credentials.get(provider)
            if credential is None:
                print(f"⏭️  Skipping {provider} (no API key)")
                continue
            await check_provider(client, provider, credential, settings)

    print("\n" + "=" * 60)
    print("Check complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
