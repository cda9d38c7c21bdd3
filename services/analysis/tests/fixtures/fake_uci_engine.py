"""Scripted UCI engine run as a subprocess by the channel tests.

Usage: python fake_uci_engine.py [normal|multipv|stoppable|hang|crash|no-handshake|noisy]
"""

import sys

MODE = sys.argv[1] if len(sys.argv) > 1 else "normal"


def send(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def search(depth: int) -> None:
    for d in range(1, depth + 1):
        if MODE == "multipv":
            send(f"info depth {d} seldepth {d + 2} multipv 1 score cp {30 + d} nodes 100 pv e2e4 e7e5 g1f3")
            send(f"info depth {d} seldepth {d + 2} multipv 2 score cp {20 + d} nodes 100 pv d2d4 d7d5")
        else:
            send(f"info depth {d} seldepth {d + 2} multipv 1 score cp {30 + d} nodes 100 nps 1000 pv e2e4 e7e5 g1f3")


def main() -> int:
    if MODE == "noisy":
        sys.stderr.write("NNUE file not found, using fallback\n")
        sys.stderr.flush()

    searching = False
    for raw in sys.stdin:
        command = raw.strip()
        if command == "quit":
            return 0
        if MODE == "no-handshake":
            continue

        if command == "uci":
            send("id name FakeFish 1.0")
            send("id author Test Suite")
            send("option name Hash type spin default 16 min 1 max 33554432")
            send("uciok")
        elif command == "isready":
            send("readyok")
        elif command.startswith("go"):
            tokens = command.split()
            depth = int(tokens[tokens.index("depth") + 1]) if "depth" in tokens else 5
            if MODE == "crash":
                send("info depth 1 score cp 10 pv e2e4")
                return 3
            if MODE in ("hang", "stoppable"):
                send("info depth 1 seldepth 1 score cp 12 pv e2e4 e7e5")
                searching = True
                continue
            search(depth)
            send("bestmove e2e4 ponder e7e5")
        elif command == "stop":
            if searching and MODE == "stoppable":
                searching = False
                send("bestmove e2e4 ponder e7e5")
    return 0


if __name__ == "__main__":
    sys.exit(main())
