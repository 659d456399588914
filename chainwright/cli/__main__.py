from chainwright.cli.main import main

raise SystemExit(main())
