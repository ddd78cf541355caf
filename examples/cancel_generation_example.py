"""Example demonstrating cooperative cancellation of a running generation.

A timer cancels the session while tokens are streaming; the stream stops
within one token and the session must be reset before it is reused.
"""

import sys
import threading

from llm_runtime_lite import GenerationConfig, InferenceEngine, InferenceRequest


def main():
    """Stream, cancel, reset and stream again."""
    if len(sys.argv) != 2:
        sys.exit("usage: python cancel_generation_example.py MODEL.gguf")

    print("=== Cancellation Example ===\n")

    with InferenceEngine() as engine:
        engine.load_runtime(engine.resolve_asset(sys.argv[1]))
        session = engine.lease_session()

        # Tokenize through the text helpers so the raw token stream can be shown
        text = engine.generate_text(session, "Say hi.", max_tokens=8)
        print(f"Warm-up reply: {text!r}")

        request = InferenceRequest(
            prompt_tokens=engine.tokenizer.encode("Count from one to one hundred:"),
            config=GenerationConfig(max_tokens=500),
        )
        stream = engine.generate(session, request)
        threading.Timer(1.0, engine.cancel, args=(session,)).start()

        tokens = stream.collect()
        print(f"\nGenerated {len(tokens)} tokens before finish_reason={stream.finish_reason!r}")
        print(f"Session state: {session.state.value}")

        session.reset()
        print(f"After reset: {session.state.value}")
        print(f"Second reply: {engine.generate_text(session, 'Say bye.', max_tokens=8)!r}")

        engine.release_session(session)


if __name__ == "__main__":
    main()
