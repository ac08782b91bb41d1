import os
import subprocess
import sys

import yaml
from flask import Flask, jsonify, render_template, request

from bulkcount.constants import STATUS_FILE

# define the paths for the status and log files written by the pipeline
DIRECTORY = os.path.abspath(os.environ.get("BULKCOUNT_DIRECTORY", "."))
STATUS_FILENAME = os.path.join(DIRECTORY, STATUS_FILE)
LOG_FILENAME = os.path.join(DIRECTORY, "bulkcount.log")

# initialize the flask application
app = Flask(__name__)


def reset_logs() -> None:
    # clear the previous status and log files for a fresh run
    for filename in [STATUS_FILENAME, LOG_FILENAME]:
        if os.path.exists(filename):
            os.remove(filename)
        open(filename, "w").close()


def read_file(filename: str) -> str:
    # return the file content, or nothing before the first run
    if not os.path.exists(filename):
        return ""
    with open(filename, "r") as f:
        return f.read()


# main route for hosting the html
@app.route("/")
def index():
    """
    Renders the main HTML page.
    This function is called when a user navigates to the root URL.
    """
    return render_template("index.html")


# handles configuration submission and runs the pipeline
@app.route("/run", methods=["POST"])
def run_script():
    # get the form data from the POST request
    data = request.get_json(silent=True) or {}
    config_file = data.get("config_file")
    if not config_file:
        return jsonify({"status": "error", "message": "No configuration file given."}), 400
    # read in the YAML file to get the current parameters
    if not os.path.exists(config_file):
        return (
            jsonify(
                {
                    "status": "error",
                    "message": f"Configuration file {config_file} does not exist.",
                }
            ),
            404,
        )
    try:
        with open(config_file, "r") as f:
            configs = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        return jsonify({"status": "error", "message": f"Invalid configuration: {e}"}), 400
    # update the configuration file with the new parameters
    for key, value in data.items():
        if key == "config_file":
            continue
        configs[key] = value
    # write the updated configuration next to the original
    config_file_updated = config_file.replace(".yaml", "_updated.yaml")
    if config_file_updated == config_file:
        config_file_updated = f"{config_file}.updated.yaml"
    with open(config_file_updated, "w") as f:
        yaml.safe_dump(configs, f, default_flow_style=False)
    # execute the pipeline in the background with the updated configuration file
    reset_logs()
    subprocess.Popen(
        [
            sys.executable,
            "-m",
            "bulkcount.main",
            "-c",
            config_file_updated,
            "-l",
            LOG_FILENAME,
            "-s",
            STATUS_FILENAME,
            "-d",
            DIRECTORY,
        ]
    )
    # return a success message to the frontend if the process starts successfully
    return jsonify(
        {
            "status": "success",
            "message": f"Process started. Check {LOG_FILENAME} for logs.",
        }
    )


# route to retrieve the status of the pipeline
@app.route("/status")
def status():
    return jsonify(
        {
            "log_content": read_file(LOG_FILENAME),
            "status_content": read_file(STATUS_FILENAME),
        }
    )


def main():
    # run the Flask app on the first free port
    host = os.environ.get("BULKCOUNT_HOST", "127.0.0.1")
    ports = [7256, 5000, 5001, 5002, 5003, 5004, 5005]
    for port in ports:
        try:
            app.run(host=host, port=port)
            break  # exit the loop if the app runs successfully
        except OSError as e:
            print(f"Port {port} is in use, trying next port... Error: {e}")


# main execution block to run the Flask app
if __name__ == "__main__":
    main()
