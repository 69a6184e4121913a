# chatty.py — ghi nhiều vào cả stdout lẫn stderr, vượt xa buffer của pipe
import sys

for i in range(2000):
    sys.stdout.write(f"out {i} " + "x" * 100 + "\n")
    sys.stderr.write(f"err {i} " + "y" * 100 + "\n")
sys.stdout.flush()
sys.stderr.flush()
