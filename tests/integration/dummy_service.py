import os
import sys
import time


def main():
    print("Dummy service starting...")
    print(f"APP_ENV: {os.environ.get('APP_ENV')}")
    for key in sorted(os.environ):
        if key.endswith(('_HOST', '_PORT')):
            print(f"{key}={os.environ[key]}")
    sys.stdout.flush()

    # Keep running until the orchestrator stops us
    for i in range(int(os.environ.get('DUMMY_SECONDS', '60'))):
        time.sleep(1)

    print("Dummy service finishing.")


if __name__ == "__main__":
    main()
