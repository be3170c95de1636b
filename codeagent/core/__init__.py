# Core modules. Import submodules directly; this package must not load the vendor SDKs.
