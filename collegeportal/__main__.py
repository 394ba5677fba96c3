import os

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8090"))
    import uvicorn

    uvicorn.run("collegeportal.main:app", host=host, port=port, reload=False)
