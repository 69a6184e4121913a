# ignore_sigterm.py — bỏ qua SIGTERM, chỉ chết khi bị SIGKILL
import signal, time

signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("ready", flush=True)
while True:
    time.sleep(0.05)
