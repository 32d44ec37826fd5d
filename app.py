# app.py - local dev runner (`python app.py`); production imports pawcart.app:app
from pawcart.app import app

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
