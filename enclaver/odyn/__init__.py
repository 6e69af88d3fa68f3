"""In-enclave supervisor pieces: configuration, process launcher, console and API service."""