import os

import uvicorn


def main():
    uvicorn.run(
        "hotel_booking.main:app",
        host=os.getenv("HOST") or "0.0.0.0",
        port=int(os.getenv("PORT") or "8000"),
        log_level=(os.getenv("LOG_LEVEL") or "info").lower(),
    )


if __name__ == "__main__":
    main()
