from flow_runtime.cli import run


if __name__ == "__main__":
    run()
